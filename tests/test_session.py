import asyncio
from datetime import datetime, timedelta
import pytest
from backend.assistant.graph import build_analysis_graph
from backend.assistant.session import (
    ConversationSession, SessionRegistry, rule_lines, SessionBusyError, SessionNotFoundError,
    EmptyMessageError, InvalidImageError, RulesLoadingError, ANALYSIS_ERROR, RULES_ERROR,
)
from backend.assistant.state import ConversationStep
from tests.fakes import FakeValidator

RULES = [
    {"id": 1, "text": "Always use a stop loss", "type": "general", "required": True, "user_id": None},
    {"id": 2, "text": "Minimum 1:2 risk/reward", "type": "general", "required": True, "user_id": "s1"},
]


def make_session(validator, rules=RULES):
    session = ConversationSession("s1", build_analysis_graph(validator))
    session.refresh_rules(lambda user_id: rules)
    return session


def chat(session, *texts):
    async def run():
        for text in texts:
            await session.send(text)
    asyncio.run(run())


def test_full_scenario_calls_validator_once():
    validator = FakeValidator({"verdict": "APPROVED", "explanation": "Trade approved, rules met."})
    session = make_session(validator)
    chat(session, "I want to buy", "EURUSD", "entry 1.1000 sl 1.0950 tp 1.1100")

    assert len(validator.calls) == 1
    call = validator.calls[0]
    assert "Trade Direction: buy" in call["trade_details"]
    assert "Asset/Pair: EURUSD" in call["trade_details"]
    assert "User Details: entry 1.1000 sl 1.0950 tp 1.1100" in call["trade_details"]
    assert call["rules"] == ["Always use a stop loss", "Minimum 1:2 risk/reward"]
    assert call["image"] is None

    messages = session.conversation.messages
    assert len(messages) == 6
    assert [m.role for m in messages] == ["user", "model"] * 3
    assert [m.text for m in messages if m.role == "user"] == [
        "I want to buy", "EURUSD", "entry 1.1000 sl 1.0950 tp 1.1100"
    ]
    assert session.conversation.step == ConversationStep.ANALYSIS_COMPLETE
    assert session.last_draft.validation_result == "approved"
    assert session.last_draft.type == "buy"
    assert session.is_analyzing is False
    assert session.error is None


def test_plain_text_reply_is_classified():
    session = make_session(FakeValidator("Trade REJECTED due to risk"))
    chat(session, "short", "GBPJPY", "no stop")
    assert session.conversation.messages[-1].text == "Trade REJECTED due to risk"
    assert session.last_draft.validation_result == "rejected"
    assert session.last_draft.type == "sell"


def test_follow_up_runs_new_analysis_and_replaces_draft():
    validator = FakeValidator("Warning: tighten your stop")
    session = make_session(validator)
    chat(session, "buy", "BTCUSD", "entry 60000")
    first = session.last_draft
    validator.response = "approved now"
    chat(session, "stop at 59000")
    assert len(validator.calls) == 2
    assert "User Details: stop at 59000" in validator.calls[1]["trade_details"]
    assert "Asset/Pair: BTCUSD" in validator.calls[1]["trade_details"]
    assert session.last_draft is not first
    assert session.last_draft.validation_result == "approved"


def test_image_is_sent_and_cleared_after_analysis():
    validator = FakeValidator()
    session = make_session(validator)
    chat(session, "buy", "XAUUSD")
    session.attach_image(b"\x89PNG", "image/png")
    assert session.selected_image.startswith("data:image/png;base64,")
    chat(session, "see chart")
    assert validator.calls[0]["image"].startswith("data:image/png;base64,")
    assert session.last_draft.screenshot_url == validator.calls[0]["image"]
    assert session.selected_image is None


def test_validator_failure_sets_error_and_clears_image():
    session = make_session(FakeValidator(error=RuntimeError("quota exceeded")))
    chat(session, "buy", "EURUSD")
    session.attach_image(b"img", "image/jpeg")
    chat(session, "entry 1.1")
    assert session.error == ANALYSIS_ERROR
    assert session.is_analyzing is False
    assert session.selected_image is None
    assert session.last_draft is None
    # No model reply was added for the failed call
    assert session.conversation.messages[-1].role == "user"


def test_empty_message_without_image_rejected():
    session = make_session(FakeValidator())
    with pytest.raises(EmptyMessageError):
        chat(session, "   ")


def test_image_only_message_is_accepted():
    session = make_session(FakeValidator())
    session.attach_image(b"img", "image/png")
    chat(session, "")
    # Not a direction, so the stepper re-prompts and keeps the chart for later
    assert session.conversation.step == ConversationStep.INITIAL
    assert session.selected_image is not None


def test_send_while_analyzing_is_refused():
    session = make_session(FakeValidator())
    session.is_analyzing = True
    with pytest.raises(SessionBusyError):
        chat(session, "buy")


def test_send_while_rules_loading_is_refused():
    session = ConversationSession("s1", build_analysis_graph(FakeValidator()))
    with pytest.raises(RulesLoadingError):
        chat(session, "buy")


def test_invalid_images_rejected():
    session = make_session(FakeValidator())
    with pytest.raises(InvalidImageError):
        session.attach_image(b"%PDF", "application/pdf")
    with pytest.raises(InvalidImageError):
        session.attach_image(b"x" * (10 * 1024 * 1024 + 1), "image/png")


def test_rule_fetch_failure_keeps_previous_rules():
    session = make_session(FakeValidator())

    def broken(user_id):
        raise ConnectionError("db down")

    session.refresh_rules(broken)
    assert session.rules_error == RULES_ERROR
    assert session.loading_rules is False
    assert len(session.rules) == 2


def test_take_draft_hands_over_once():
    session = make_session(FakeValidator())
    chat(session, "buy", "EURUSD", "entry")
    assert session.take_draft() is not None
    assert session.take_draft() is None


def test_view_decodes_structured_replies():
    session = make_session(FakeValidator({"verdict": "REJECTED", "explanation": "No stop loss."}))
    chat(session, "sell", "US30", "entry 39000")
    view = session.view()
    assert view["messages"][-1]["verdict"] == {"verdict": "REJECTED", "explanation": "No stop loss."}
    assert view["messages"][1]["verdict"] is None
    assert view["placeholder"] == "Continue the conversation..."
    assert view["rules_count"] == 2
    assert view["draft"]["validation_result"] == "rejected"


def test_registry_refreshes_every_session_on_rule_change():
    rules = list(RULES)
    fetches = []

    def fetch(user_id):
        fetches.append(user_id)
        return list(rules)

    registry = SessionRegistry(FakeValidator(), fetch)
    a = registry.create("s1")
    b = registry.create("s2")
    rules.append({"id": 3, "text": "No trading on Fridays", "type": "general", "required": False})

    registry.on_rule_change(None)
    registry.on_rule_change(None)

    # Two creations plus one re-fetch per session per event
    assert len(fetches) == 6
    assert len(a.rules) == 3 and len(b.rules) == 3


def test_registry_lookup_and_close():
    registry = SessionRegistry(FakeValidator(), lambda user_id: [])
    session = registry.create("s1")
    assert registry.get(session.id) is session
    registry.close(session.id)
    with pytest.raises(SessionNotFoundError):
        registry.get(session.id)
    with pytest.raises(SessionNotFoundError):
        registry.close(session.id)


def test_optional_rules_are_marked_for_the_validator():
    validator = FakeValidator()
    rules = RULES + [{"id": 3, "text": "Avoid trading during news", "type": "general", "required": False}]
    session = make_session(validator, rules)
    chat(session, "buy", "XAUUSD", "entry 2400 sl 2390 tp 2430")
    assert validator.calls[0]["rules"] == [
        "Always use a stop loss", "Minimum 1:2 risk/reward", "Avoid trading during news (optional)"
    ]


def test_rule_lines_keeps_required_rules_unmarked():
    assert rule_lines([]) == []
    assert rule_lines([{"text": "Stop loss", "required": True}, {"text": "Journal it", "required": False}]) == [
        "Stop loss", "Journal it (optional)"
    ]


T0 = datetime(2025, 11, 26, 9, 0)


def test_registry_evicts_idle_sessions_on_create():
    registry = SessionRegistry(FakeValidator(), lambda user_id: [], idle_minutes=60)
    stale = registry.create("s1", now=T0)
    recent = registry.create("s2", now=T0 + timedelta(minutes=30))
    registry.create("s3", now=T0 + timedelta(minutes=61))
    assert stale.id not in registry.sessions
    assert recent.id in registry.sessions
    with pytest.raises(SessionNotFoundError):
        registry.get(stale.id)


def test_registry_cap_drops_least_recently_used():
    registry = SessionRegistry(FakeValidator(), lambda user_id: [], max_sessions=2)
    a = registry.create("s1", now=T0)
    b = registry.create("s2", now=T0 + timedelta(minutes=1))
    a.touch(T0 + timedelta(minutes=2))
    c = registry.create("s3", now=T0 + timedelta(minutes=3))
    assert set(registry.sessions) == {a.id, c.id}
    assert b.id not in registry.sessions


def test_registry_keeps_sessions_with_running_analysis():
    registry = SessionRegistry(FakeValidator(), lambda user_id: [], idle_minutes=5, max_sessions=1)
    busy = registry.create("s1", now=T0)
    busy.is_analyzing = True
    assert registry.evict(T0 + timedelta(hours=2)) == []
    registry.create("s2", now=T0 + timedelta(hours=2))
    assert busy.id in registry.sessions


def test_registry_get_marks_session_active():
    registry = SessionRegistry(FakeValidator(), lambda user_id: [], idle_minutes=60)
    session = registry.create("s1", now=T0)
    registry.get(session.id)
    assert session.last_active > T0
