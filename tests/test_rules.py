from backend.models import TradeRule
from backend.services import rules as rule_events
from backend.services.rules import RuleRepository, RuleChange, rule_to_dict


def test_fetch_user_rules_includes_global_rules_in_order(db):
    repo = RuleRepository(db)
    repo.create_rule("Global stop loss rule", order_number=1)
    repo.create_rule("Mine second", user_id="s1", order_number=2)
    repo.create_rule("Mine first", user_id="s1", order_number=0)
    repo.create_rule("Someone else's", user_id="s2")

    texts = [r.text for r in repo.fetch_user_rules("s1")]
    assert texts == ["Mine first", "Global stop loss rule", "Mine second"]


def test_create_appends_after_owner_rules(db):
    repo = RuleRepository(db)
    first = repo.create_rule("a", user_id="s1")
    second = repo.create_rule("b", user_id="s1")
    assert (first.order_number, second.order_number) == (0, 1)


def test_update_and_delete(db):
    repo = RuleRepository(db)
    rule = repo.create_rule("Risk 1% max", type="general", required=True)
    updated = repo.update_rule(rule.id, text="Risk 2% max", required=False, type=None)
    assert updated.text == "Risk 2% max"
    assert updated.required is False
    assert updated.type == "general"
    assert repo.update_rule(999, text="x") is None

    rule_id = rule.id
    assert repo.delete_rule(rule_id) is True
    assert repo.get_rule(rule_id) is None
    assert repo.delete_rule(rule_id) is False


def test_every_committed_change_is_published(db):
    received = []
    unsubscribe = rule_events.subscribe(received.append)
    try:
        repo = RuleRepository(db)
        rule_id = repo.create_rule("No revenge trading", user_id="s1").id
        repo.update_rule(rule_id, text="No revenge trading, ever")
        repo.delete_rule(rule_id)
    finally:
        unsubscribe()

    assert received == [
        RuleChange("INSERT", rule_id, "s1"),
        RuleChange("UPDATE", rule_id, "s1"),
        RuleChange("DELETE", rule_id, "s1"),
    ]


def test_rolled_back_changes_are_not_published(db):
    received = []
    unsubscribe = rule_events.subscribe(received.append)
    try:
        db.add(TradeRule(text="draft rule"))
        db.flush()
        db.rollback()
    finally:
        unsubscribe()
    assert received == []


def test_failing_listener_does_not_block_others(db):
    received = []

    def broken(change):
        raise RuntimeError("listener down")

    unsubscribers = [rule_events.subscribe(broken), rule_events.subscribe(received.append)]
    try:
        RuleRepository(db).create_rule("Trade the plan")
    finally:
        for unsubscribe in unsubscribers:
            unsubscribe()
    assert [c.event for c in received] == ["INSERT"]


def test_unsubscribe_stops_delivery(db):
    received = []
    unsubscribe = rule_events.subscribe(received.append)
    unsubscribe()
    unsubscribe()
    RuleRepository(db).create_rule("Quiet rule")
    assert received == []


def test_rule_to_dict(db):
    rule = RuleRepository(db).create_rule("Wait for candle close", type="buy", required=False, user_id="s9")
    assert rule_to_dict(rule) == {
        "id": rule.id,
        "user_id": "s9",
        "text": "Wait for candle close",
        "type": "buy",
        "required": False,
        "order_number": 0,
    }
