"""
Moderation-label transport for community notes.

Labels are emitted through the Ozone moderation API as modEventLabel events
on the annotated post. A note's label_status column mirrors the last
successful action so negation can target the live label value.
"""

import logging
import secrets
import time
from datetime import datetime, UTC
from typing import Optional, Protocol

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from notes_consensus.config import Settings, get_settings
from notes_consensus.database import LabelLog, Note
from notes_consensus.exceptions import ConfigurationError
from notes_consensus.models import LabelAction, LabelStatus, NoteStatus


logger = logging.getLogger(__name__)

EMIT_EVENT_PATH = "/xrpc/tools.ozone.moderation.emitEvent"
CREATE_SESSION_PATH = "/xrpc/com.atproto.server.createSession"

LIVE_LABELS = (LabelStatus.ANNOTATION.value, LabelStatus.PROPOSED_ANNOTATION.value)


def status_to_label_val(status: NoteStatus) -> Optional[str]:
    """
    Map a note's status to the label value it should carry.

    CRH gets the full annotation, NMR the proposed one; CRNH carries no
    label and has to be negated instead.
    """
    if status == NoteStatus.CURRENTLY_RATED_HELPFUL:
        return LabelStatus.ANNOTATION.value
    if status == NoteStatus.NEEDS_MORE_RATINGS:
        return LabelStatus.PROPOSED_ANNOTATION.value
    return None


def secure_random_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(6)}"


class LabelPublisher(Protocol):
    """What the orchestrator needs from a label transport."""

    def publish_label(self, note_id: str, post_uri: str, status: NoteStatus) -> bool:
        ...

    def negate_label(self, note_id: str, post_uri: str) -> bool:
        ...


class OzoneLabelPublisher:
    """
    Publishes and negates note labels via an Ozone moderation service.

    Both operations return True on success and False on any failure,
    including timeouts; failures are logged and recorded in the label log.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        client: Optional[httpx.Client] = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.client = client or httpx.Client(timeout=self.settings.label_request_timeout_seconds)
        self._access_jwt: Optional[str] = None

    def close(self):
        self.client.close()

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    def publish_label(self, note_id: str, post_uri: str, status: NoteStatus) -> bool:
        """Apply or refresh the label matching status on the note's post."""
        label_val = status_to_label_val(NoteStatus(status))
        if label_val is None:
            return self.negate_label(note_id, post_uri)

        current = self._current_label_status(note_id)
        negate_vals = [current] if current in LIVE_LABELS and current != label_val else []

        log_id = secure_random_id("cll")
        try:
            self._emit_label_event(
                post_uri,
                create=[label_val],
                negate=negate_vals,
                comment=f"Community note {note_id} reached {NoteStatus(status).value}",
            )
        except (httpx.HTTPError, ConfigurationError) as e:
            logger.error(f"Label publish failed for note {note_id}: {e}")
            self._log_label_action(log_id, note_id, LabelAction.PUBLISH, label_val, False, str(e))
            return False

        self._mirror_label_status(
            note_id,
            label_status=label_val,
            label_published_at=datetime.now(UTC),
            label_uri=f"at://{self.settings.labeler_did}/com.atproto.label.label/{note_id}",
        )
        self._log_label_action(log_id, note_id, LabelAction.PUBLISH, label_val, True, None)
        return True

    def negate_label(self, note_id: str, post_uri: str) -> bool:
        """
        Retract whatever label this note currently has on its post.

        Nothing to retract (no label, already negated, or note gone) counts
        as success.
        """
        current = self._current_label_status(note_id)
        if current not in LIVE_LABELS:
            return True

        log_id = secure_random_id("cll")
        try:
            self._emit_label_event(
                post_uri,
                create=[],
                negate=[current],
                comment=f"Negating label for community note {note_id}",
            )
        except (httpx.HTTPError, ConfigurationError) as e:
            logger.error(f"Label negation failed for note {note_id}: {e}")
            self._log_label_action(log_id, note_id, LabelAction.NEGATE, current, False, str(e))
            return False

        self._mirror_label_status(note_id, label_status=LabelStatus.NEGATED.value)
        self._log_label_action(log_id, note_id, LabelAction.NEGATE, current, True, None)
        return True

    # -------------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------------

    def _get_access_jwt(self) -> str:
        """Log in as the labeler account once per publisher."""
        if self._access_jwt:
            return self._access_jwt

        if not self.settings.labeler_handle or not self.settings.labeler_password:
            raise ConfigurationError("Labeler agent not configured")

        response = self.client.post(
            f"{self.settings.labeler_service_url.rstrip('/')}{CREATE_SESSION_PATH}",
            json={
                "identifier": self.settings.labeler_handle,
                "password": self.settings.labeler_password,
            },
        )
        response.raise_for_status()
        self._access_jwt = response.json()["accessJwt"]
        return self._access_jwt

    def _emit_label_event(self, post_uri: str, create: list, negate: list, comment: str):
        if not self.settings.ozone_url:
            raise ConfigurationError("OZONE_URL is not configured")

        access_jwt = self._get_access_jwt()
        response = self.client.post(
            f"{self.settings.ozone_url.rstrip('/')}{EMIT_EVENT_PATH}",
            headers={"Authorization": f"Bearer {access_jwt}"},
            json={
                "event": {
                    "$type": "tools.ozone.moderation.defs#modEventLabel",
                    "createLabelVals": create,
                    "negateLabelVals": negate,
                    "comment": comment,
                },
                "subject": {
                    "$type": "com.atproto.repo.strongRef",
                    "uri": post_uri,
                    "cid": "",  # CID not required for label operations
                },
                "createdBy": self.settings.labeler_did,
            },
        )
        response.raise_for_status()

    # -------------------------------------------------------------------------
    # Database mirror
    # -------------------------------------------------------------------------

    def _current_label_status(self, note_id: str) -> Optional[str]:
        return self.db.execute(
            select(Note.label_status).where(Note.id == note_id)
        ).scalar_one_or_none()

    def _mirror_label_status(self, note_id: str, **values):
        """Record the applied label on the note; the label call already succeeded."""
        try:
            self.db.execute(update(Note).where(Note.id == note_id).values(**values))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Failed to mirror label status for note {note_id}")

    def _log_label_action(
        self,
        log_id: str,
        note_id: str,
        action: LabelAction,
        label_val: Optional[str],
        success: bool,
        error: Optional[str],
    ):
        try:
            self.db.add(LabelLog(
                id=log_id,
                note_id=note_id,
                action=action.value,
                label_val=label_val,
                success=success,
                error=error,
            ))
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(f"Failed to log label action for note {note_id}")
