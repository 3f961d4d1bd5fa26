"""Model, agent and variant selection helpers.

Pure functions over the server's provider and agent catalogues. The
reconciler holds the selection itself; these decide what it should be.
"""
from __future__ import annotations

from collections.abc import Iterable, Mapping
from typing import Any

from ocdesk.shared.models.message import MessageEntry, SelectedModel

# The server's default agent; selecting it is the same as selecting none.
DEFAULT_AGENT = "build"


def variant_key(provider_id: str, model_id: str) -> str:
    return f"{provider_id}/{model_id}"


def find_model(
    providers: Iterable[Mapping[str, Any]], provider_id: str, model_id: str,
) -> Mapping[str, Any] | None:
    for provider in providers:
        if provider.get("id") != provider_id:
            continue
        models = provider.get("models") or {}
        model = models.get(model_id)
        if model is not None:
            return model
    return None


def enabled_variants(model: Mapping[str, Any] | None) -> list[str]:
    if not model:
        return []
    variants = model.get("variants") or {}
    return [name for name, spec in variants.items() if not (spec or {}).get("disabled")]


def cycle_variant(current: str | None, model: Mapping[str, Any] | None) -> str | None:
    """Next enabled variant after *current*; None (default) after the last."""
    keys = enabled_variants(model)
    if not keys:
        return None
    if current is None:
        return keys[0]
    try:
        idx = keys.index(current)
    except ValueError:
        return None
    if idx >= len(keys) - 1:
        return None
    return keys[idx + 1]


def resolve_variant(
    selected_model: SelectedModel | None,
    variant_selections: Mapping[str, str],
    agents: Iterable[Mapping[str, Any]],
    selected_agent: str | None,
) -> str | None:
    """Explicit per-model choice, else the selected agent's variant, else None."""
    if selected_model is None:
        return None
    explicit = variant_selections.get(
        variant_key(selected_model.provider_id, selected_model.model_id)
    )
    if explicit is not None:
        return explicit
    if selected_agent:
        for agent in agents:
            if agent.get("name") == selected_agent and agent.get("variant"):
                return agent["variant"]
    return None


def resolve_server_default_model(
    providers: Iterable[Mapping[str, Any]],
    defaults: Mapping[str, str],
) -> SelectedModel | None:
    """Pick the server's default model from the provider catalogue.

    Newer servers map ``providerID -> modelID``; older ones map an agent
    or scope to ``"providerID/modelID"``. Both are tried in that order.
    """
    providers = list(providers)
    for provider in providers:
        pid = provider.get("id")
        model_id = defaults.get(pid) if pid else None
        if isinstance(model_id, str) and model_id in (provider.get("models") or {}):
            return SelectedModel(pid, model_id)

    for raw in defaults.values():
        if not isinstance(raw, str):
            continue
        provider_id, sep, model_id = raw.partition("/")
        if not sep or not provider_id or not model_id:
            continue
        if find_model(providers, provider_id, model_id) is not None:
            return SelectedModel(provider_id, model_id)
    return None


def is_selectable_agent(agents: Iterable[Mapping[str, Any]], name: str) -> bool:
    return any(
        a.get("name") == name
        and a.get("mode") in ("primary", "all")
        and not a.get("hidden")
        for a in agents
    )


def model_from_history(
    messages: Iterable[MessageEntry], providers: Iterable[Mapping[str, Any]],
) -> SelectedModel | None:
    providers = list(providers)
    for entry in reversed(list(messages)):
        info = entry.info
        model = info.model
        if info.role == "assistant" and model is not None:
            if find_model(providers, model.provider_id, model.model_id) is not None:
                return model
    return None


def agent_from_history(
    messages: Iterable[MessageEntry], agents: Iterable[Mapping[str, Any]],
) -> str | None:
    agents = list(agents)
    for entry in reversed(list(messages)):
        info = entry.info
        if info.role == "assistant" and info.agent and is_selectable_agent(agents, info.agent):
            return None if info.agent == DEFAULT_AGENT else info.agent
    return None


def variant_from_history(messages: Iterable[MessageEntry]) -> str | None:
    for entry in reversed(list(messages)):
        if entry.info.role == "assistant" and entry.info.variant:
            return entry.info.variant
    return None
