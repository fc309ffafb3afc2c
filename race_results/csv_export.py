from __future__ import annotations

import csv
from io import StringIO

from fastapi import APIRouter, Depends, HTTPException
from starlette.responses import Response
from sqlalchemy.orm import Session

from .db import get_session
from . import ranking, services
from .auth import marshal_required
from .utils import format_ms, parse_completion_time_ms

router = APIRouter()

def _csv_response(filename: str, text: str) -> Response:
    return Response(
        content=text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )

@router.get("/results.csv")
def results_csv(categoryId: int, session: Session = Depends(get_session)):
    category = services.get_category(session, categoryId)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    rows = ranking.get_rankings(session, categoryId)
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["ranking", "participant_id", "name", "completion_time", "time_ms", "normalized_time", "recorded_at", "notes"])
    for r in rows:
        ms = parse_completion_time_ms(r.completion_time)
        w.writerow([
            r.ranking if r.ranking is not None else "",
            r.participant_id,
            r.participant_name,
            r.completion_time,
            ms,
            format_ms(ms),
            r.recorded_at.isoformat() if r.recorded_at else "",
            r.notes or "",
        ])
    safe_name = category.category_name.replace(" ", "_")
    return _csv_response(f"results_{category.event_id}_{safe_name}.csv", buf.getvalue())

@router.get("/participants.csv")
def participants_csv(
    eventId: int,
    user=Depends(marshal_required),
    session: Session = Depends(get_session),
):
    event = services.get_event(session, eventId)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    services.assert_can_manage_event(session, user, event)

    rows = services.list_event_participants(session, eventId)
    buf = StringIO()
    w = csv.writer(buf)
    w.writerow(["participant_id", "name", "email", "category", "registration_status", "payment_status", "registered_at"])
    for p in rows:
        w.writerow([
            p.id,
            p.user.name,
            p.user.email,
            p.category.category_name,
            p.registration_status,
            p.payment_status,
            p.registered_at.isoformat() if p.registered_at else "",
        ])
    return _csv_response(f"participants_{eventId}.csv", buf.getvalue())
