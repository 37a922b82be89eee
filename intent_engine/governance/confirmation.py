"""
Confirmation Gate — only the exact drafted command may be executed.

Every drafted ActionCommand is signed with an HMAC over its canonical
fields plus the caller's tenant and user. An act call is accepted only if:
  - the signature matches (no field was changed since drafting)
  - the draft is younger than the confirmation TTL
  - risk level and confirmation flag agree with a fresh risk lookup
  - confirmation-required commands arrive with confirmed=true
  - a non-idempotent command has not already been consumed

Violations raise ConfirmationMismatch; the caller must re-draft.
"""

import hashlib
import hmac
import json
import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict

from intent_engine.governance.drafter import classify_risk, requires_confirmation
from intent_engine.governance.playbook import get_entry
from intent_engine.models.action import ActionCommand
from intent_engine.models.errors import ConfirmationMismatch
from intent_engine.models.wire import utc_now

logger = logging.getLogger("intent-engine.confirmation")


class ConfirmationGate:
    def __init__(
        self,
        secret: str,
        ttl_seconds: int = 900,
        confirm_medium_risk: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ):
        if not secret:
            raise ValueError("confirmation secret must not be empty")
        self._secret = secret.encode()
        self.ttl = timedelta(seconds=ttl_seconds)
        self.confirm_medium_risk = confirm_medium_risk
        self._clock = clock
        self._consumed: Dict[str, datetime] = {}
        self._lock = threading.Lock()

    def _sign(self, command: ActionCommand, tenant_id: str, user_id: str) -> str:
        material = {
            "command": command.binding_fields(),
            "tenant_id": tenant_id,
            "user_id": user_id,
        }
        canonical = json.dumps(material, sort_keys=True, separators=(",", ":"), default=str)
        return hmac.new(self._secret, canonical.encode(), hashlib.sha256).hexdigest()

    def issue(self, command: ActionCommand, tenant_id: str, user_id: str) -> ActionCommand:
        """Return a copy of the command carrying its confirmation token."""
        token = self._sign(command, tenant_id, user_id)
        return command.model_copy(update={"confirmation_token": token})

    def requires_pause(self, command: ActionCommand) -> bool:
        """True if interpret must stop at AwaitingConfirmation."""
        return command.confirmation_required

    def verify(
        self,
        command: ActionCommand,
        tenant_id: str,
        user_id: str,
        confirmed: bool,
    ) -> None:
        """Raise ConfirmationMismatch unless the command may execute now."""
        if not command.confirmation_token:
            raise ConfirmationMismatch(
                "Action command carries no confirmation token; request a fresh draft"
            )

        expected = self._sign(command, tenant_id, user_id)
        if not hmac.compare_digest(expected, command.confirmation_token):
            logger.warning(
                "Rejected tampered or foreign action command interaction=%s",
                command.interaction_id,
            )
            raise ConfirmationMismatch(
                "Action command does not match the drafted command; request a fresh draft"
            )

        if self._clock() - command.issued_at > self.ttl:
            raise ConfirmationMismatch("Action draft has expired; request a fresh draft")

        risk = classify_risk(
            command.type, command.entity_type, command.entity_state, command.parameters
        )
        if risk != command.risk_level or (
            requires_confirmation(risk, self.confirm_medium_risk)
            != command.confirmation_required
        ):
            raise ConfirmationMismatch(
                "Action risk classification changed since drafting; request a fresh draft"
            )

        if command.confirmation_required and not confirmed:
            raise ConfirmationMismatch(
                "This action requires explicit confirmation"
            )

        self._consume(command)

    def _consume(self, command: ActionCommand) -> None:
        """At-most-once for non-idempotent commands."""
        entry = get_entry(command.type)
        if entry is not None and entry.idempotent:
            return
        now = self._clock()
        with self._lock:
            self._consumed = {
                token: expiry for token, expiry in self._consumed.items() if expiry > now
            }
            if command.confirmation_token in self._consumed:
                raise ConfirmationMismatch(
                    "This action command was already executed; request a fresh draft"
                )
            self._consumed[command.confirmation_token] = command.issued_at + self.ttl
