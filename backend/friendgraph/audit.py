"""Offline consistency audit for friendships.

Scans the whole store for rows that violate the friendship invariants and,
with ``--fix``, hands each affected pair to ``FriendshipEngine.reconcile_pair``
so repairs go through the same locked, validated path as live traffic.

    python -m friendgraph.audit            # report only
    python -m friendgraph.audit --fix      # report and repair
"""

import argparse
import logging
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from friendgraph.core.logging import configure_logging
from friendgraph.core.settings import settings
from friendgraph.domain.pairs import CanonicalPair
from friendgraph.domain.states import RelationshipState, RequestStatus
from friendgraph.engine import FriendshipEngine, ReconcileReport, find_orphaned_notifications
from friendgraph.store.base import RelationshipStore
from friendgraph.store.sql import SqlRelationshipStore

log = logging.getLogger(__name__)


class FindingKind(str, Enum):
    ACCEPTED_WITHOUT_RELATIONSHIP = "accepted_without_relationship"
    RELATIONSHIP_WITHOUT_REQUEST = "relationship_without_request"
    DUPLICATE_PENDING = "duplicate_pending"
    PENDING_ALONGSIDE_RELATIONSHIP = "pending_alongside_relationship"
    RESOLVED_REQUEST_LINGERING = "resolved_request_lingering"
    ORPHANED_NOTIFICATION = "orphaned_notification"


# Expected under total-deletion semantics; reported, never repaired.
INFORMATIONAL = frozenset({FindingKind.RELATIONSHIP_WITHOUT_REQUEST})


@dataclass(frozen=True)
class Finding:
    kind: FindingKind
    pair: CanonicalPair
    record_ids: tuple[int, ...] = ()
    detail: str = ""

    @property
    def repairable(self) -> bool:
        return self.kind not in INFORMATIONAL


def scan(store: RelationshipStore) -> list[Finding]:
    with store.transaction() as tx:
        relationships = {r.pair: r for r in store.list_all_relationships(tx)}
        requests = store.list_all_requests(tx)
        notifications = store.list_all_notifications(tx)

    findings: list[Finding] = []

    requests_by_pair = defaultdict(list)
    for req in requests:
        requests_by_pair[req.pair].append(req)

    for pair, reqs in requests_by_pair.items():
        rel = relationships.get(pair)
        pending = [r for r in reqs if r.is_pending]
        accepted = [r for r in reqs if r.status == RequestStatus.ACCEPTED]
        resolved = [r for r in reqs if not r.is_pending and r.status != RequestStatus.ACCEPTED]

        if accepted and rel is None:
            findings.append(
                Finding(
                    FindingKind.ACCEPTED_WITHOUT_RELATIONSHIP,
                    pair,
                    tuple(r.id for r in accepted),
                    "accepted request was never applied",
                )
            )
        elif accepted:
            resolved.extend(accepted)

        if resolved:
            findings.append(
                Finding(
                    FindingKind.RESOLVED_REQUEST_LINGERING,
                    pair,
                    tuple(r.id for r in resolved),
                    "resolved request rows should have been deleted",
                )
            )

        if pending and rel is not None:
            findings.append(
                Finding(
                    FindingKind.PENDING_ALONGSIDE_RELATIONSHIP,
                    pair,
                    tuple(r.id for r in pending),
                    f"pending request next to a {rel.state.value} relationship",
                )
            )
        elif len(pending) > 1:
            findings.append(
                Finding(
                    FindingKind.DUPLICATE_PENDING,
                    pair,
                    tuple(r.id for r in pending),
                    f"{len(pending)} pending requests for one pair",
                )
            )

    for pair, rel in relationships.items():
        if rel.state != RelationshipState.ACTIVE:
            continue
        if not any(r.status == RequestStatus.ACCEPTED for r in requests_by_pair.get(pair, ())):
            findings.append(Finding(FindingKind.RELATIONSHIP_WITHOUT_REQUEST, pair, (rel.id,)))

    notifications_by_pair = defaultdict(list)
    for n in notifications:
        if n.user_id == n.source_user_id:
            log.warning("notification %s points at its own recipient, skipping", n.id)
            continue
        notifications_by_pair[n.pair].append(n)

    for pair, notes in notifications_by_pair.items():
        pending = [r for r in requests_by_pair.get(pair, ()) if r.is_pending]
        orphaned = find_orphaned_notifications(notes, relationships.get(pair), pending)
        if orphaned:
            findings.append(
                Finding(
                    FindingKind.ORPHANED_NOTIFICATION,
                    pair,
                    tuple(n.id for n in orphaned),
                    ", ".join(sorted({n.type for n in orphaned})),
                )
            )

    for f in findings:
        level = logging.INFO if not f.repairable else logging.WARNING
        log.log(level, "%s %s ids=%s %s", f.kind.value, tuple(f.pair), list(f.record_ids), f.detail)
    return findings


def repair(engine: FriendshipEngine, findings: list[Finding]) -> list[ReconcileReport]:
    pairs = sorted({f.pair for f in findings if f.repairable})
    reports = []
    for pair in pairs:
        report = engine.reconcile_pair(pair.low, pair.high)
        reports.append(report)
    return reports


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Friendship consistency audit")
    parser.add_argument("--fix", action="store_true", help="Repair every repairable finding")
    parser.add_argument("--database-url", default=None, help="Defaults to DATABASE_URL")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL)
    args = parser.parse_args(argv)

    configure_logging(args.log_level)

    url = args.database_url or settings.DATABASE_URL
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    db_engine = create_engine(url, connect_args=connect_args, pool_pre_ping=True)
    store = SqlRelationshipStore(sessionmaker(autocommit=False, autoflush=False, bind=db_engine))

    findings = scan(store)
    repairable = [f for f in findings if f.repairable]
    log.info(
        "audit finished: %d findings (%d repairable)", len(findings), len(repairable)
    )

    if not args.fix:
        return 1 if repairable else 0

    reports = repair(FriendshipEngine(store), repairable)
    changed = [r for r in reports if r.changed]
    log.info("repaired %d of %d pairs", len(changed), len(reports))

    remaining = [f for f in scan(store) if f.repairable]
    if remaining:
        log.error("%d findings remain after repair", len(remaining))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
