"""Result recording and per-category ranking.

Rankings are a full re-materialization: every time a finish is recorded the
whole category is re-sorted and every ``Result.ranking`` is rewritten. The
read-sort-write cycle runs under a per-category lock and inside a single
transaction, so concurrent recordings in one category are serialized and a
failed pass leaves the previous rankings in place.
"""
from __future__ import annotations

import logging
import threading
import weakref
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, selectinload

from . import models
from .services import ConflictError, NotFoundError, ValidationError
from .utils import is_valid_completion_time, parse_completion_time_ms

logger = logging.getLogger(__name__)

_locks_guard = threading.Lock()
# an entry lives only while some thread holds or waits on that category's lock
_category_locks: "weakref.WeakValueDictionary[int, threading.Lock]" = weakref.WeakValueDictionary()


@contextmanager
def category_lock(category_id: int) -> Iterator[None]:
    with _locks_guard:
        lock = _category_locks.get(category_id)
        if lock is None:
            lock = threading.Lock()
            _category_locks[category_id] = lock
    with lock:
        yield


def _rank_key(result: models.Result) -> tuple:
    # equal times: the earlier recording wins, then insertion order
    return (parse_completion_time_ms(result.completion_time), result.recorded_at, result.id)


def recalculate_rankings(session: Session, category_id: int) -> list[models.Result]:
    """Re-rank every result of ``category_id``; returns them fastest first.

    Flushes but does not commit; the caller owns the transaction.
    """
    try:
        results = session.execute(
            select(models.Result).where(models.Result.category_id == category_id).with_for_update()
        ).scalars().all()

        ordered = sorted(results, key=_rank_key)
        for position, result in enumerate(ordered, start=1):
            result.ranking = position
        session.flush()
    except Exception:
        logger.exception("Error recalculating rankings for category %s", category_id)
        raise

    malformed = [r.id for r in ordered if not is_valid_completion_time(r.completion_time)]
    if malformed:
        logger.warning("Category %s has results with malformed times: %s", category_id, malformed)
    logger.info("Recalculated rankings for category %s (%d results)", category_id, len(ordered))
    return ordered


def rerank_category(session: Session, category_id: int) -> list[models.Result]:
    if not session.get(models.Category, category_id):
        raise NotFoundError("Category not found")
    with category_lock(category_id):
        try:
            ordered = recalculate_rankings(session, category_id)
            session.commit()
        except Exception:
            session.rollback()
            raise
    return ordered


def get_result(session: Session, participant_id: int, category_id: int) -> Optional[models.Result]:
    return session.execute(
        select(models.Result).where(
            and_(models.Result.participant_id == participant_id, models.Result.category_id == category_id)
        )
    ).scalar_one_or_none()


def record_result(
    session: Session,
    *,
    participant_id: int,
    category_id: int,
    completion_time: str,
    notes: Optional[str] = None,
    recorded_by: Optional[int] = None,
) -> models.Result:
    """Store a participant's finish time and re-rank the category.

    A participant's finish is recorded exactly once per category; there is no
    correction path through here.
    """
    completion_time = (completion_time or "").strip()
    if not is_valid_completion_time(completion_time):
        raise ValidationError("Invalid completion time. Use HH:MM:SS.mmm, MM:SS.mmm or SS.mmm")

    participant = session.execute(
        select(models.Participant).where(
            and_(
                models.Participant.id == participant_id,
                models.Participant.category_id == category_id,
                models.Participant.registration_status == models.APPROVED,
            )
        )
    ).scalar_one_or_none()
    if not participant:
        raise NotFoundError("Participant not found or not approved for this category")

    with category_lock(category_id):
        if get_result(session, participant_id, category_id):
            raise ConflictError("Result already recorded for this participant in this category")

        result = models.Result(
            participant_id=participant_id,
            category_id=category_id,
            completion_time=completion_time,
            notes=notes,
            recorded_by=recorded_by,
        )
        session.add(result)
        try:
            session.flush()
            recalculate_rankings(session, category_id)
            session.commit()
        except IntegrityError as exc:
            # lost a race against another process recording the same finish
            session.rollback()
            raise ConflictError("Result already recorded for this participant in this category") from exc
        except Exception:
            session.rollback()
            raise

    logger.info(
        "Recorded %s for participant %s in category %s (rank %s)",
        completion_time, participant_id, category_id, result.ranking,
    )
    return result


@dataclass
class RankingRow:
    id: int
    participant_id: int
    participant_name: str
    completion_time: str
    ranking: Optional[int]
    recorded_at: object
    notes: Optional[str]
    needs_correction: bool


def get_rankings(session: Session, category_id: int) -> list[RankingRow]:
    results = session.execute(
        select(models.Result)
        .options(selectinload(models.Result.participant).selectinload(models.Participant.user))
        .where(models.Result.category_id == category_id)
        .order_by(models.Result.ranking.is_(None), models.Result.ranking.asc(), models.Result.recorded_at.asc())
    ).scalars().all()
    return [
        RankingRow(
            id=r.id,
            participant_id=r.participant_id,
            participant_name=r.participant.user.name,
            completion_time=r.completion_time,
            ranking=r.ranking,
            recorded_at=r.recorded_at,
            notes=r.notes,
            needs_correction=not is_valid_completion_time(r.completion_time),
        )
        for r in results
    ]
