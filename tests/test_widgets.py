from ocdesk.shared.models.conversation import ConnectionStatus, Conversation, LinkState
from ocdesk.shared.models.message import Message, MessageEntry, Part, SelectedModel
from ocdesk.state.reconciler import DeskSnapshot
from ocdesk.tui.widgets.conversation import render_messages, session_label
from ocdesk.tui.widgets.status_bar import describe_selection, summarize_connections


def test_no_projects_summary() -> None:
    assert summarize_connections({}) == (LinkState.IDLE, "no projects")


def test_all_connected_summary() -> None:
    connections = {
        "/a": ConnectionStatus(state=LinkState.CONNECTED),
        "/b": ConnectionStatus(state=LinkState.CONNECTED),
    }
    assert summarize_connections(connections) == (LinkState.CONNECTED, "2/2 connected")


def test_worst_link_wins_and_shows_its_error() -> None:
    connections = {
        "/a": ConnectionStatus(state=LinkState.CONNECTED),
        "/b": ConnectionStatus(state=LinkState.RECONNECTING, error="Reconnecting in 2s..."),
        "/c": ConnectionStatus(state=LinkState.CONNECTING),
    }
    state, label = summarize_connections(connections)
    assert state == LinkState.RECONNECTING
    assert label == "1/3 connected · Reconnecting in 2s..."


def test_selection_label() -> None:
    assert describe_selection(DeskSnapshot()) == "default model · build"
    snap = DeskSnapshot(
        selected_model=SelectedModel("anthropic", "sonnet"),
        selected_agent="plan",
        current_variant="high",
    )
    assert describe_selection(snap) == "anthropic/sonnet · plan · high"


def test_render_messages_includes_tool_status_and_errors() -> None:
    entry = MessageEntry(
        info=Message(id="m1", session_id="c1", role="assistant", error="Invalid API key"),
        parts=(
            Part(id="p1", message_id="m1", session_id="c1", fields={"text": "Working on it"}),
            Part(id="p2", message_id="m1", session_id="c1", type="tool",
                 fields={"tool": "bash"}, data={"state": {"status": "running"}}),
        ),
    )
    plain = render_messages([entry]).plain
    assert "assistant" in plain
    assert "Working on it" in plain
    assert "bash running" in plain
    assert "Invalid API key" in plain


def test_session_label_marks_busy_before_unread() -> None:
    conversation = Conversation(id="c1", title="Fix login")
    assert session_label(conversation, busy=True, unread=True).plain == "● Fix login"
    assert session_label(conversation, busy=False, unread=False).plain == "Fix login"
    assert session_label(Conversation(id="c2"), busy=False, unread=False).plain == "c2"
