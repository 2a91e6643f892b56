from __future__ import annotations

import logging
from dataclasses import dataclass, field

from .models import ArtifactKind, Stage
from .stages import PlannedArtifact
from .state_store import StudioStateStore

logger = logging.getLogger(__name__)


@dataclass
class CommitReport:
    """What a replace-and-persist commit actually did."""

    deleted: dict[str, int] = field(default_factory=dict)
    inserted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    links_written: int = 0
    cleanup_errors: list[str] = field(default_factory=list)

    @property
    def inserted_count(self) -> int:
        return len(self.inserted)


class ReplaceAndPersistWriter:
    """Replaces a session's current artifact set for one stage.

    The whole commit holds the (session, stage) lock so two concurrent commits
    cannot interleave.  Clearing prior rows is best effort: a deletion failure
    is logged and insertion proceeds.  Each artifact inserts independently, so
    one bad row never aborts the batch.
    """

    def __init__(self, store: StudioStateStore) -> None:
        self.store = store

    def commit(
        self,
        *,
        session_id: str,
        stage: Stage,
        kinds: tuple[ArtifactKind, ...],
        planned: list[PlannedArtifact],
    ) -> CommitReport:
        report = CommitReport()
        with self.store.stage_lock(session_id, stage):
            for kind in kinds:
                try:
                    report.deleted[kind.value] = self.store.delete_artifacts(session_id, kind)
                except OSError as exc:
                    logger.error("Error clearing existing %s artifacts for session %s: %s", kind.value, session_id, exc)
                    report.cleanup_errors.append(f"{kind.value}: {exc}")

            inserted_ids: set[str] = set()
            for item in planned:
                if item.parent_id is not None and item.parent_id not in inserted_ids:
                    logger.error("Skipping %s: parent %s was not inserted", item.label, item.parent_id)
                    report.skipped.append(item.label)
                    continue
                try:
                    self.store.insert_artifact(item.record)
                except (OSError, ValueError) as exc:
                    logger.error("Error inserting %s: %s", item.label, exc)
                    report.failed.append(item.label)
                    continue
                inserted_ids.add(item.record.id)
                report.inserted.append(item.label)

                for relation, target_ids in item.links.items():
                    if not target_ids:
                        continue
                    try:
                        report.links_written += self.store.write_links(
                            session_id, item.record.id, relation, target_ids
                        )
                    except (OSError, ValueError) as exc:
                        logger.error("Error linking %s %s: %s", item.label, relation, exc)

        logger.info(
            "Committed %s for session %s: %d inserted, %d failed, %d skipped, %d links",
            stage.value,
            session_id,
            len(report.inserted),
            len(report.failed),
            len(report.skipped),
            report.links_written,
        )
        return report
