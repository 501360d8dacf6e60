"""Tests for Plan lookup, iteration, integrity, and append."""

import dataclasses
from datetime import UTC, datetime

import pytest

from stratum.contracts.errors import ChangeNotFoundError, IntegrityError, PlanSyntaxError
from stratum.core.plan import Plan
from tests.conftest import PLANNER, make_plan


@pytest.fixture
def reworked() -> Plan:
    """users is reworked after @v1; flips sits between the two instances."""
    return make_plan("users", "flips [users]", "@v1", "users", "@v2", "audit")


class TestLookup:
    def test_get_by_id(self) -> None:
        plan = make_plan("users", "@v1")
        for entry in plan.entries():
            assert plan.get(entry.id) is entry

    def test_get_by_name_returns_latest_instance(self, reworked: Plan) -> None:
        instances = reworked.instances("users")
        assert len(instances) == 2
        assert reworked.get("users") is instances[-1]

    def test_get_name_at_tag(self, reworked: Plan) -> None:
        first, second = reworked.instances("users")
        assert reworked.get("users@v1") is first
        assert reworked.get("users@v2") is second
        assert reworked.get("users@HEAD") is second
        assert reworked.get("users@ROOT") is first

    def test_get_tag(self, reworked: Plan) -> None:
        from stratum.core.plan import Tag

        tag = reworked.get("@v1")
        assert isinstance(tag, Tag)
        assert reworked.get_change("@v1").name == "flips"

    def test_symbolic_tags(self, reworked: Plan) -> None:
        assert reworked.get("@HEAD").name == "audit"
        assert reworked.get("@ROOT").name == "users"

    def test_project_prefix(self, reworked: Plan) -> None:
        assert reworked.get("flipr:audit") is reworked.get("audit")
        assert reworked.get("other:audit") is None

    def test_unknown_keys(self, reworked: Plan) -> None:
        assert reworked.get("nope") is None
        assert reworked.get("@nope") is None
        assert reworked.get("users@nope") is None
        with pytest.raises(ChangeNotFoundError, match="Unknown change 'nope'"):
            reworked.get_change("nope")

    def test_index_of_and_change_at(self, reworked: Plan) -> None:
        audit = reworked.get_change("audit")
        assert reworked.index_of(audit.id) == 3
        assert reworked.change_at(3) is audit
        with pytest.raises(ChangeNotFoundError):
            reworked.index_of("0" * 64)

    def test_latest_instance_before(self, reworked: Plan) -> None:
        first, second = reworked.instances("users")
        assert reworked.latest_instance_before("users", 0) is None
        assert reworked.latest_instance_before("users", 2) is first
        assert reworked.latest_instance_before("users", 3) is second


class TestDerivedFields:
    def test_tags_attached_to_preceding_change(self, reworked: Plan) -> None:
        assert reworked.get_change("flips").tags == ("v1",)
        assert reworked.get("users").tags == ("v2",)
        assert reworked.get_change("audit").tags == ()

    def test_rework_tag_and_script_name(self, reworked: Plan) -> None:
        first, second = reworked.instances("users")
        assert first.rework_tag == "v1"
        assert first.script_name == "users@v1"
        assert second.rework_tag is None
        assert second.script_name == "users"

    def test_iteration_is_repeatable(self, reworked: Plan) -> None:
        assert list(reworked.changes()) == list(reworked.changes())
        assert len(reworked) == 4
        assert len(list(reworked.tags())) == 2
        assert len(list(reworked.entries())) == 6

    def test_contains_checks_change_ids(self, reworked: Plan) -> None:
        audit = reworked.get_change("audit")
        tag = reworked.get("@v1")
        assert audit.id in reworked
        assert tag.id not in reworked


class TestVerifyChain:
    def test_valid_chain(self, reworked: Plan) -> None:
        reworked.verify_chain()

    def test_edited_content_detected(self) -> None:
        plan = make_plan("users", "flips", "audit")
        entries = list(plan.entries())
        entries[1] = dataclasses.replace(entries[1], note="edited")
        tampered = Plan(plan.project, entries)

        with pytest.raises(IntegrityError) as exc_info:
            tampered.verify_chain()
        assert exc_info.value.entry_id == entries[1].id
        assert exc_info.value.entry_name == "flips"

    def test_broken_parent_link_detected(self) -> None:
        plan = make_plan("users", "flips", "audit")
        entries = list(plan.entries())
        del entries[1]
        with pytest.raises(IntegrityError, match="chained to"):
            Plan(plan.project, entries).verify_chain()


class TestAppend:
    def test_append_change_returns_new_plan(self) -> None:
        plan = make_plan("users")
        when = datetime(2024, 2, 1, tzinfo=UTC)
        updated = plan.append_change("flips", planner=PLANNER, planned_at=when, requires=["users"], conflicts=["legacy"])

        assert len(plan) == 1
        assert len(updated) == 2
        flips = updated.get_change("flips")
        assert flips.parent_id == plan.last_change.id
        assert [str(d) for d in flips.conflicts] == ["!legacy"]
        updated.verify_chain()

    def test_append_keeps_existing_ids(self) -> None:
        plan = make_plan("users", "@v1")
        updated = plan.append_change("flips", planner=PLANNER)
        assert [e.id for e in updated.entries()][:2] == [e.id for e in plan.entries()]

    def test_append_change_rule_violation(self) -> None:
        plan = make_plan("users")
        with pytest.raises(PlanSyntaxError, match="already planned"):
            plan.append_change("users", planner=PLANNER)

    def test_append_tag(self) -> None:
        plan = make_plan("users")
        updated = plan.append_tag("@v1.0", planner=PLANNER, note="first")
        tag = updated.last_entry
        assert tag.name == "v1.0"
        assert tag.change_id == plan.last_change.id
        assert updated.get_change("users").tags == ("v1.0",)

    def test_append_tag_on_empty_plan(self) -> None:
        with pytest.raises(PlanSyntaxError, match="before any change"):
            Plan("flipr", []).append_tag("v1", planner=PLANNER)
