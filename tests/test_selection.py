from __future__ import annotations

from ocdesk.shared.models.message import Message, MessageEntry, SelectedModel
from ocdesk.state import selection

PROVIDERS = [
    {
        "id": "anthropic",
        "models": {
            "sonnet": {"variants": {"low": {}, "high": {}, "max": {"disabled": True}}},
            "haiku": {},
        },
    },
    {"id": "openai", "models": {"gpt": {}}},
]
AGENTS = [
    {"name": "build", "mode": "primary"},
    {"name": "plan", "mode": "primary", "variant": "high"},
    {"name": "review", "mode": "all", "hidden": True},
    {"name": "explore", "mode": "subagent"},
]


def _assistant(provider: str | None, model: str | None, agent: str | None = None,
               variant: str | None = None) -> MessageEntry:
    return MessageEntry(info=Message(
        id=f"m-{provider}-{model}-{agent}", session_id="c1", role="assistant",
        provider_id=provider, model_id=model, agent=agent, variant=variant,
    ))


def test_variant_key() -> None:
    assert selection.variant_key("anthropic", "sonnet") == SelectedModel("anthropic", "sonnet").key


def test_enabled_variants_skip_disabled() -> None:
    model = selection.find_model(PROVIDERS, "anthropic", "sonnet")
    assert selection.enabled_variants(model) == ["low", "high"]
    assert selection.enabled_variants(None) == []


def test_cycle_variant_walks_then_returns_to_default() -> None:
    model = selection.find_model(PROVIDERS, "anthropic", "sonnet")
    assert selection.cycle_variant(None, model) == "low"
    assert selection.cycle_variant("low", model) == "high"
    assert selection.cycle_variant("high", model) is None
    assert selection.cycle_variant("gone", model) is None
    assert selection.cycle_variant(None, {}) is None


def test_resolve_variant_prefers_explicit_choice() -> None:
    sonnet = SelectedModel("anthropic", "sonnet")
    assert selection.resolve_variant(sonnet, {"anthropic/sonnet": "low"}, AGENTS, "plan") == "low"
    assert selection.resolve_variant(sonnet, {}, AGENTS, "plan") == "high"
    assert selection.resolve_variant(sonnet, {}, AGENTS, None) is None
    assert selection.resolve_variant(None, {}, AGENTS, "plan") is None


def test_server_default_model_accepts_both_shapes() -> None:
    assert selection.resolve_server_default_model(PROVIDERS, {"openai": "gpt"}) == \
        SelectedModel("openai", "gpt")
    assert selection.resolve_server_default_model(PROVIDERS, {"build": "anthropic/haiku"}) == \
        SelectedModel("anthropic", "haiku")
    assert selection.resolve_server_default_model(PROVIDERS, {"anthropic": "missing"}) is None


def test_selectable_agents() -> None:
    assert selection.is_selectable_agent(AGENTS, "plan")
    assert selection.is_selectable_agent(AGENTS, "build")
    assert not selection.is_selectable_agent(AGENTS, "review")
    assert not selection.is_selectable_agent(AGENTS, "explore")
    assert not selection.is_selectable_agent(AGENTS, "unknown")


def test_history_uses_latest_known_assistant_message() -> None:
    history = [
        _assistant("anthropic", "haiku", "plan", "low"),
        _assistant("openai", "gpt", "explore"),
        _assistant("gone", "model"),
    ]
    assert selection.model_from_history(history, PROVIDERS) == SelectedModel("openai", "gpt")
    assert selection.agent_from_history(history, AGENTS) == "plan"
    assert selection.variant_from_history(history) == "low"


def test_history_ignores_user_messages_and_maps_build_to_default() -> None:
    user = MessageEntry(info=Message(
        id="u1", session_id="c1", role="user", provider_id="anthropic", model_id="sonnet",
        agent="plan",
    ))
    history = [_assistant("anthropic", "haiku", "build"), user]
    assert selection.model_from_history(history, PROVIDERS) == SelectedModel("anthropic", "haiku")
    assert selection.agent_from_history(history, AGENTS) is None
    assert selection.variant_from_history([]) is None
