"""Tests for disambiguation, validation, drafting and the Confirmation Gate."""

from datetime import datetime, timedelta, timezone

import pytest

from intent_engine.governance.confirmation import ConfirmationGate
from intent_engine.governance.disambiguation import (
    DisambiguationThresholds,
    decide,
    decide_with_thresholds,
)
from intent_engine.governance.drafter import ActionDrafter, DraftingError, classify_risk
from intent_engine.governance.playbook import PLAYBOOK, render
from intent_engine.governance.validation import validate_command, validate_parameters
from intent_engine.models.action import RiskLevel
from intent_engine.models.entities import CandidateEntity, EntityType, EvidenceChip, EvidenceType
from intent_engine.models.errors import ConfirmationMismatch
from intent_engine.models.intent import (
    ContextEntities,
    IntentLabel,
    ParsedIntent,
    ParseSource,
)


class _Clock:
    def __init__(self):
        self.now = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now


def _make_candidate(
    entity_id: str = "task_1",
    confidence: float = 0.9,
    entity_type: EntityType = EntityType.TASK,
    title: str = "Login bug",
    status: str = "Ready",
) -> CandidateEntity:
    return CandidateEntity(
        id=entity_id,
        type=entity_type,
        title=title,
        confidence=confidence,
        evidence=[EvidenceChip(type=EvidenceType.ASSIGNMENT, label="Assigned to you", value="1 day ago")],
        metadata={"status": status},
    )


def _make_parsed(intent: IntentLabel, **parameters) -> ParsedIntent:
    return ParsedIntent(
        intent=intent,
        confidence=0.9,
        parameters=parameters,
        source=ParseSource.LANGUAGE_MODEL,
    )


class TestDisambiguation:
    def test_clear_winner_is_auto_selected(self):
        result = decide([_make_candidate("a", 0.92), _make_candidate("b", 0.60)])
        assert result.auto_select
        assert not result.ambiguous
        assert result.selected.id == "a"
        assert result.margin == pytest.approx(0.32)

    def test_close_scores_are_ambiguous(self):
        result = decide([_make_candidate("a", 0.90), _make_candidate("b", 0.86)])
        assert result.ambiguous
        assert not result.auto_select
        assert [c.id for c in result.candidates] == ["a", "b"]

    def test_low_confidence_is_ambiguous(self):
        result = decide([_make_candidate("a", 0.75)])
        assert result.ambiguous

    def test_single_candidate_margin_is_its_confidence(self):
        result = decide([_make_candidate("a", 0.85)])
        assert result.auto_select
        assert result.margin == pytest.approx(0.85)

    def test_no_candidates(self):
        result = decide([])
        assert result.ambiguous
        assert result.no_matches
        assert not result.auto_select

    def test_candidates_are_ranked(self):
        result = decide([_make_candidate("b", 0.5), _make_candidate("a", 0.95)])
        assert [c.id for c in result.candidates] == ["a", "b"]

    def test_fallback_parses_need_more_confidence(self):
        thresholds = DisambiguationThresholds(min_confidence=0.80, min_margin=0.15, fallback_penalty=0.05)
        candidates = [_make_candidate("a", 0.82)]
        assert decide_with_thresholds(candidates, thresholds).auto_select
        assert not decide_with_thresholds(candidates, thresholds, from_fallback=True).auto_select


class TestValidation:
    def test_status_must_be_known(self):
        errors = validate_parameters(IntentLabel.UPDATE_STATUS, {"new_status": "Blocked"})
        assert errors and "Invalid status" in errors[0]
        assert validate_parameters(IntentLabel.UPDATE_STATUS, {"new_status": "InReview"}) == []

    def test_priority_range(self):
        assert validate_parameters(IntentLabel.UPDATE_PRIORITY, {"priority": 6})
        assert validate_parameters(IntentLabel.UPDATE_PRIORITY, {"priority": "x"})
        assert validate_parameters(IntentLabel.UPDATE_PRIORITY, {}) == ["Priority is required"]
        assert validate_parameters(IntentLabel.UPDATE_PRIORITY, {"priority": 3}) == []

    def test_title_rules(self):
        assert validate_parameters(IntentLabel.CREATE_ITEM, {}) == ["Title is required"]
        assert validate_parameters(IntentLabel.CREATE_ITEM, {"title": "x" * 201})
        assert validate_parameters(IntentLabel.CREATE_ITEM, {"title": "Fix it", "item_type": "sprint"})

    def test_comment_and_assignee_required(self):
        assert validate_parameters(IntentLabel.ADD_COMMENT, {"comment": "  "})
        assert validate_parameters(IntentLabel.ASSIGN_TASK, {})

    def test_target_compatibility(self):
        errors = validate_command(IntentLabel.CLOSE_SPRINT, "task_1", EntityType.TASK, {})
        assert errors == ["close_sprint can only target a sprint"]
        assert validate_command(IntentLabel.TAKE_OWNERSHIP, None, None, {}) == [
            "A target work item is required"
        ]
        assert validate_command(IntentLabel.SEARCH_ITEMS, None, None, {}) == []


class TestRiskClassification:
    def test_read_only_is_low(self):
        assert classify_risk(IntentLabel.QUERY_STATUS, EntityType.SPRINT, None) == RiskLevel.LOW

    def test_destructive_is_high(self):
        assert classify_risk(IntentLabel.ARCHIVE, EntityType.TASK, "Ready") == RiskLevel.HIGH
        assert classify_risk(IntentLabel.CLOSE_SPRINT, EntityType.SPRINT, "Active") == RiskLevel.HIGH

    def test_container_mutation_is_high(self):
        assert classify_risk(IntentLabel.UPDATE_STATUS, EntityType.PROJECT, None) == RiskLevel.HIGH

    def test_bulk_is_high(self):
        risk = classify_risk(
            IntentLabel.UPDATE_STATUS, EntityType.TASK, None, {"entity_ids": ["a", "b"]}
        )
        assert risk == RiskLevel.HIGH

    def test_single_item_mutation_is_medium(self):
        assert classify_risk(IntentLabel.TAKE_OWNERSHIP, EntityType.TASK, "Ready") == RiskLevel.MEDIUM

    def test_noop_status_change_is_low(self):
        assert classify_risk(IntentLabel.COMPLETE_TASK, EntityType.TASK, "Done") == RiskLevel.LOW
        risk = classify_risk(IntentLabel.UPDATE_STATUS, EntityType.TASK, "InReview", {"new_status": "InReview"})
        assert risk == RiskLevel.LOW

    def test_lookup_is_stable(self):
        first = classify_risk(IntentLabel.MOVE_TO_SPRINT, EntityType.STORY, "Ready")
        second = classify_risk(IntentLabel.MOVE_TO_SPRINT, EntityType.STORY, "Ready")
        assert first == second == RiskLevel.MEDIUM


class TestPlaybook:
    def test_every_intent_has_a_playbook(self):
        for label in IntentLabel:
            if label != IntentLabel.UNKNOWN:
                assert label in PLAYBOOK

    def test_render_tolerates_missing_values(self):
        assert render("Move {title} to {new_status}", {"title": "'X'"}) == "Move 'X' to ?"


class TestActionDrafter:
    def setup_method(self):
        self.clock = _Clock()
        self.drafter = ActionDrafter(clock=self.clock)

    def test_take_ownership_draft(self):
        command = self.drafter.draft(_make_parsed(IntentLabel.TAKE_OWNERSHIP), _make_candidate())

        assert command.type == IntentLabel.TAKE_OWNERSHIP
        assert command.entity_id == "task_1"
        assert command.entity_state == "Ready"
        assert command.risk_level == RiskLevel.MEDIUM
        assert command.confirmation_required is False
        assert command.description == "Take ownership of 'Login bug'"
        assert command.issued_at == self.clock.now
        assert [s.details["operation"] for s in command.draft.steps] == [
            "get_item", "assign_self", "notify",
        ]
        assert command.draft.potential_issues is None
        assert "assigned to you" in command.draft.reasoning

    def test_close_sprint_requires_confirmation(self):
        sprint = _make_candidate("sprint_12", entity_type=EntityType.SPRINT, title="Sprint 12", status="Active")
        command = self.drafter.draft(_make_parsed(IntentLabel.CLOSE_SPRINT), sprint)

        assert command.risk_level == RiskLevel.HIGH
        assert command.confirmation_required is True
        assert any("backlog" in issue for issue in command.draft.potential_issues)

    def test_status_intents_carry_target_status(self):
        command = self.drafter.draft(_make_parsed(IntentLabel.START_WORK), _make_candidate())
        assert command.parameters["new_status"] == "InProgress"

    def test_invalid_parameters_are_surfaced(self):
        command = self.drafter.draft(_make_parsed(IntentLabel.UPDATE_PRIORITY, priority=9), _make_candidate())
        assert command.draft.potential_issues == ["Priority must be an integer between 1 and 5"]

    def test_create_item_uses_context(self):
        parsed = _make_parsed(IntentLabel.CREATE_ITEM, title="Add retry", item_type="task")
        command = self.drafter.draft(
            parsed, context=ContextEntities(story_id="story_3", sprint_id="sprint_12")
        )
        assert command.entity_id is None
        assert command.parameters["parent_id"] == "story_3"
        assert command.parameters["sprint_id"] == "sprint_12"
        assert command.description == 'Create task "Add retry"'

    def test_confirm_medium_risk_setting(self):
        drafter = ActionDrafter(confirm_medium_risk=True, clock=self.clock)
        command = drafter.draft(_make_parsed(IntentLabel.TAKE_OWNERSHIP), _make_candidate())
        assert command.confirmation_required is True

    def test_unknown_cannot_be_drafted(self):
        with pytest.raises(DraftingError):
            self.drafter.draft(_make_parsed(IntentLabel.UNKNOWN))


class TestConfirmationGate:
    def setup_method(self):
        self.clock = _Clock()
        self.drafter = ActionDrafter(clock=self.clock)
        self.gate = ConfirmationGate("test-secret", ttl_seconds=900, clock=self.clock)

    def _issue(self, intent=IntentLabel.TAKE_OWNERSHIP, target=None, **parameters):
        command = self.drafter.draft(_make_parsed(intent, **parameters), target or _make_candidate())
        return self.gate.issue(command, "tenant_a", "user_1")

    def test_issued_command_verifies(self):
        command = self._issue()
        assert command.confirmation_token
        self.gate.verify(command, "tenant_a", "user_1", confirmed=False)

    def test_wire_round_trip_verifies(self):
        command = self._issue()
        restored = type(command).model_validate(command.model_dump(mode="json", by_alias=True))
        self.gate.verify(restored, "tenant_a", "user_1", confirmed=False)

    def test_modified_command_is_rejected(self):
        command = self._issue()
        tampered = command.model_copy(update={"entity_id": "task_2"})
        with pytest.raises(ConfirmationMismatch):
            self.gate.verify(tampered, "tenant_a", "user_1", confirmed=False)

    def test_other_caller_is_rejected(self):
        command = self._issue()
        with pytest.raises(ConfirmationMismatch):
            self.gate.verify(command, "tenant_b", "user_1", confirmed=False)
        with pytest.raises(ConfirmationMismatch):
            self.gate.verify(command, "tenant_a", "user_2", confirmed=False)

    def test_missing_token_is_rejected(self):
        command = self._issue().model_copy(update={"confirmation_token": ""})
        with pytest.raises(ConfirmationMismatch):
            self.gate.verify(command, "tenant_a", "user_1", confirmed=True)

    def test_high_risk_needs_explicit_confirmation(self):
        sprint = _make_candidate("sprint_12", entity_type=EntityType.SPRINT, title="Sprint 12", status="Active")
        command = self._issue(IntentLabel.CLOSE_SPRINT, sprint)
        assert self.gate.requires_pause(command)

        with pytest.raises(ConfirmationMismatch):
            self.gate.verify(command, "tenant_a", "user_1", confirmed=False)
        self.gate.verify(command, "tenant_a", "user_1", confirmed=True)

    def test_expired_draft_is_rejected(self):
        command = self._issue()
        self.clock.now += timedelta(seconds=901)
        with pytest.raises(ConfirmationMismatch):
            self.gate.verify(command, "tenant_a", "user_1", confirmed=False)

    def test_risk_policy_change_is_rejected(self):
        command = self._issue()
        stricter = ConfirmationGate("test-secret", confirm_medium_risk=True, clock=self.clock)
        with pytest.raises(ConfirmationMismatch):
            stricter.verify(command, "tenant_a", "user_1", confirmed=True)

    def test_non_idempotent_command_runs_once(self):
        command = self._issue(IntentLabel.ADD_COMMENT, comment="Needs repro steps")
        self.gate.verify(command, "tenant_a", "user_1", confirmed=False)
        with pytest.raises(ConfirmationMismatch):
            self.gate.verify(command, "tenant_a", "user_1", confirmed=False)

    def test_idempotent_command_may_repeat(self):
        command = self._issue()
        self.gate.verify(command, "tenant_a", "user_1", confirmed=False)
        self.gate.verify(command, "tenant_a", "user_1", confirmed=False)

    def test_empty_secret_rejected(self):
        with pytest.raises(ValueError):
            ConfirmationGate("")
