"""
Tests for the capture rules that couple writes to outbox rows.

The rendered DDL is what apply_schema() runs, so these tests pin down the
trigger timing, operations, predicates and payload keys.
"""

from __future__ import annotations

import pytest

from croutons.core.models import EventType
from croutons.store.capture import (
    CAPTURE_RULES,
    FACT_INSERT,
    FACT_UPDATE,
    PARTICIPATION_INSERT,
    TRIPLE_INSERT,
    CaptureRule,
    render_capture_sql,
)


class TestRules:
    def test_every_event_type_has_a_rule(self) -> None:
        assert {rule.event_type for rule in CAPTURE_RULES} == set(EventType)

    def test_rule_names_unique(self) -> None:
        names = [rule.name for rule in CAPTURE_RULES]
        assert len(names) == len(set(names))

    def test_fact_update_only_on_content_change(self) -> None:
        assert FACT_UPDATE.operations == ("UPDATE",)
        assert FACT_UPDATE.predicate == "NEW.content_hash IS DISTINCT FROM OLD.content_hash"

    def test_participation_filters_on_new_row_only(self) -> None:
        assert PARTICIPATION_INSERT.operations == ("INSERT", "UPDATE")
        assert "OLD." not in PARTICIPATION_INSERT.predicate
        assert "NEW.ai_readable_source" in PARTICIPATION_INSERT.predicate
        assert "NEW.markdown_discovered" in PARTICIPATION_INSERT.predicate


class TestRender:
    def test_unconditional_rule(self) -> None:
        function, drop, create = TRIPLE_INSERT.render()

        assert function.startswith("CREATE OR REPLACE FUNCTION fn_outbox_triple_insert()")
        assert "INSERT INTO outbox_events (event_type, payload)" in function
        assert "'triple.insert'" in function
        assert "IF " not in function
        assert "RETURN NEW;" in function
        assert drop == "DROP TRIGGER IF EXISTS trg_outbox_triple_insert ON triples"
        assert "AFTER INSERT ON triples" in create
        assert "FOR EACH ROW EXECUTE FUNCTION fn_outbox_triple_insert()" in create

    def test_predicate_wraps_insert(self) -> None:
        function, _, create = PARTICIPATION_INSERT.render()
        assert f"IF {PARTICIPATION_INSERT.predicate} THEN" in function
        assert "END IF;" in function
        assert "AFTER INSERT OR UPDATE ON source_participation" in create

    @pytest.mark.parametrize("key", ["id", "source_url", "content_hash", "text", "triple", "natural_id"])
    def test_fact_payload_keys(self, key: str) -> None:
        assert f"'{key}', NEW." in FACT_INSERT.payload_sql()

    def test_render_capture_sql_is_three_statements_per_rule(self) -> None:
        assert len(render_capture_sql()) == 3 * len(CAPTURE_RULES)


class TestValidation:
    def test_rejects_delete(self) -> None:
        with pytest.raises(ValueError):
            CaptureRule("x", "facts", EventType.FACT_INSERT, ("DELETE",), (("id", "NEW.id"),))

    def test_rejects_empty_operations(self) -> None:
        with pytest.raises(ValueError):
            CaptureRule("x", "facts", EventType.FACT_INSERT, (), (("id", "NEW.id"),))

    def test_rejects_old_in_insert_predicate(self) -> None:
        with pytest.raises(ValueError):
            CaptureRule(
                "x",
                "facts",
                EventType.FACT_UPDATE,
                ("INSERT", "UPDATE"),
                (("id", "NEW.id"),),
                predicate="NEW.text <> OLD.text",
            )
