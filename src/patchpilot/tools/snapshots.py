"""Named, restorable captures of uncommitted workspace state."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List

from ..telemetry import emit_event
from .vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

_MESSAGE_PREFIX = "orch"


@dataclass(slots=True)
class Snapshot:
    """Point-in-time capture of the workspace for one attempt.

    ``stashed`` is ``False`` when the tree was clean at capture time; restoring
    such a snapshot only resets to ``head``.
    """

    label: str
    message: str
    head: str | None
    stashed: bool


class SnapshotManager:
    """Create/locate/restore/drop snapshots stored as git stash entries.

    Stash indices shift whenever entries are added or removed, so refs are
    always looked up by message right before use.
    """

    def __init__(self, repo: GitRepository, namespace: str) -> None:
        self.repo = repo
        self.namespace = namespace
        self._snapshots: Dict[str, Snapshot] = {}

    def message_for(self, label: str) -> str:
        return f"{_MESSAGE_PREFIX}-{self.namespace}-{label}"

    def create(self, label: str) -> Snapshot:
        """Capture the current workspace without changing it."""
        message = self.message_for(label)
        head = self.repo.head_commit()
        stashed = self.repo.stash_push(message=message, include_untracked=True)
        if stashed:
            ref = self.locate(label)
            if ref is None:
                raise GitError(f"Snapshot {message} was not recorded in the stash list")
            self.repo.stash_apply(ref)
        snapshot = Snapshot(label=label, message=message, head=head, stashed=stashed)
        self._snapshots[label] = snapshot
        emit_event("snapshot.created", label=label, stashed=stashed, head=head)
        return snapshot

    def locate(self, label: str) -> str | None:
        """Return the current stash ref for ``label`` or ``None``."""
        message = self.message_for(label)
        for ref, subject in self.repo.stash_list():
            if subject == message or subject.endswith(f": {message}"):
                return ref
        return None

    def has_active(self, label: str) -> bool:
        """Return ``True`` while ``label`` is restorable and not yet dropped."""
        if label not in self._snapshots:
            return self.locate(label) is not None
        snapshot = self._snapshots[label]
        if not snapshot.stashed:
            return True
        return self.locate(label) is not None

    def labels(self) -> List[str]:
        return list(self._snapshots)

    def restore(self, label: str) -> None:
        """Return the workspace to the state captured under ``label``.

        The snapshot is consumed: its stash entry is dropped after a successful
        apply.
        """
        snapshot = self._snapshots.get(label)
        ref = self.locate(label)
        head = snapshot.head if snapshot else None
        if snapshot is None and ref is None:
            raise GitError(f"No snapshot recorded for {label}")
        self.repo.reset_hard(head)
        self.repo.clean_untracked()
        if ref is not None:
            self.repo.stash_apply(ref)
            self.repo.stash_drop(ref)
        self._snapshots.pop(label, None)
        emit_event("snapshot.restored", label=label, head=head, stashed=ref is not None)

    def drop(self, label: str) -> bool:
        """Discard ``label`` without touching the workspace."""
        ref = self.locate(label)
        self._snapshots.pop(label, None)
        if ref is None:
            return False
        self.repo.stash_drop(ref)
        emit_event("snapshot.dropped", label=label)
        return True

    def drop_all(self) -> None:
        """Drop every snapshot this manager created."""
        for label in list(self._snapshots):
            self.drop(label)


__all__ = ["Snapshot", "SnapshotManager"]
