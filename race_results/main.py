import logging
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request, Depends, HTTPException, Query
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, JSONResponse, Response
from fastapi.templating import Jinja2Templates
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from starlette.exceptions import HTTPException as StarletteHTTPException

from .settings import settings
from .db import init_db, get_session, open_session
from . import models, ranking, services
from .auth import (
    AuthCookieMiddleware,
    get_current_user,
    login_required,
    runner_required,
    marshal_required,
    admin_required,
    set_login_cookie,
    clear_login_cookie,
)
from .qr import Label, build_label_sheet_pdf, make_qr_data_url
from .schemas import (
    UserRegister,
    LoginRequest,
    MarshalVerification,
    EventCreate,
    EventUpdate,
    CategoryCreate,
    CategoryUpdate,
    PasswordChange,
    RegistrationCreate,
    PaymentVerification,
    ResultCreate,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Race Results")
app.add_middleware(AuthCookieMiddleware)

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

@app.on_event("startup")
def _startup() -> None:
    logging.basicConfig(level=settings.RACE_LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    init_db()
    # Ensure the single admin account exists
    s = open_session()
    try:
        services.ensure_admin_user(s)
    finally:
        s.close()

# ---------------------------
# Error mapping
# ---------------------------

@app.exception_handler(services.ServiceError)
def _service_error(request: Request, exc: services.ServiceError):
    return JSONResponse({"error": str(exc)}, status_code=exc.status_code)

@app.exception_handler(StarletteHTTPException)
def _http_error(request: Request, exc: StarletteHTTPException):
    return JSONResponse({"error": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))

@app.exception_handler(RequestValidationError)
def _validation_error(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"error": "Invalid request data", "details": jsonable_encoder(exc.errors())},
        status_code=400,
    )

# ---------------------------
# Serializers
# ---------------------------

def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None

def _user_dict(u) -> dict:
    return {
        "id": u.id,
        "name": u.name,
        "email": u.email,
        "role": u.role,
        "verificationStatus": u.verification_status,
    }

def _category_dict(c: models.Category) -> dict:
    return {
        "id": c.id,
        "name": c.category_name,
        "description": c.description,
        "targetAudience": c.target_audience,
        "gunStartTime": c.gun_start_time,
        "cutOffTime": c.cut_off_time,
    }

def _event_dict(e: models.Event) -> dict:
    return {
        "id": e.id,
        "name": e.event_name,
        "date": _iso(e.event_date),
        "location": e.location,
        "description": e.description,
        "categories": [_category_dict(c) for c in e.categories],
    }

def _result_dict(r: Optional[models.Result]) -> Optional[dict]:
    if r is None:
        return None
    return {
        "id": r.id,
        "participantId": r.participant_id,
        "categoryId": r.category_id,
        "completionTime": r.completion_time,
        "ranking": r.ranking,
        "notes": r.notes,
        "recordedAt": _iso(r.recorded_at),
    }

def _registration_dict(p: models.Participant) -> dict:
    return {
        "id": p.id,
        "eventId": p.event_id,
        "categoryId": p.category_id,
        "categoryName": p.category.category_name,
        "registrationStatus": p.registration_status,
        "paymentStatus": p.payment_status,
        "registrationDate": _iso(p.registered_at),
    }

def _ranking_row_dict(row: ranking.RankingRow) -> dict:
    return {
        "id": row.id,
        "participantId": row.participant_id,
        "participantName": row.participant_name,
        "completionTime": row.completion_time,
        "ranking": row.ranking,
        "recordedAt": _iso(row.recorded_at),
        "notes": row.notes,
        "needsCorrection": row.needs_correction,
    }

def _rankings_payload(session: Session, category_id: int) -> dict:
    category = services.get_category(session, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    rows = ranking.get_rankings(session, category_id)
    return {
        "categoryId": category_id,
        "categoryName": category.category_name,
        "totalResults": len(rows),
        "results": [_ranking_row_dict(r) for r in rows],
    }

# ---------------------------
# Auth
# ---------------------------

@app.post("/api/auth/register", status_code=201)
def register(payload: UserRegister, session=Depends(get_session)):
    u = services.register_user(session, payload)
    return {"message": "Registration successful", "user": _user_dict(u)}

@app.post("/api/auth/login")
def login(request: Request, payload: LoginRequest, session=Depends(get_session)):
    u = services.authenticate_user(session, email=payload.email, password=payload.password)
    if not u:
        raise HTTPException(status_code=401, detail="Invalid email or password")
    set_login_cookie(request, user_id=u.id)
    return {"user": _user_dict(u)}

@app.post("/api/auth/logout")
def logout(request: Request):
    clear_login_cookie(request)
    return {"success": True}

@app.get("/api/profile")
def profile(user=Depends(login_required)):
    return {"user": _user_dict(user)}

@app.patch("/api/settings/password")
def change_password(payload: PasswordChange, user=Depends(login_required), session=Depends(get_session)):
    services.change_password(session, user.id, payload.current_password, payload.new_password)
    return {"message": "Password updated successfully"}

# ---------------------------
# Admin
# ---------------------------

@app.get("/api/admin/marshal-verification", dependencies=[Depends(admin_required)])
def pending_marshals(session=Depends(get_session)):
    users = services.list_pending_marshals(session)
    return {"marshals": [_user_dict(u) for u in users], "total": len(users)}

@app.post("/api/admin/marshal-verification", dependencies=[Depends(admin_required)])
def marshal_verification(payload: MarshalVerification, session=Depends(get_session)):
    u = services.verify_marshal(session, payload.user_id, payload.action)
    return {"user": _user_dict(u)}

# ---------------------------
# Events
# ---------------------------

@app.get("/api/public/events")
def public_events(session=Depends(get_session)):
    events = services.list_events(session)
    return {"events": [_event_dict(e) for e in events], "total": len(events)}

@app.get("/api/public/events/{event_id}")
def public_event(event_id: int, session=Depends(get_session)):
    event = services.get_event(session, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    return {"event": _event_dict(event)}

@app.post("/api/events", status_code=201)
def create_event(payload: EventCreate, user=Depends(marshal_required), session=Depends(get_session)):
    event = services.create_event(session, payload, created_by=user.id)
    return {"event": _event_dict(event)}

@app.post("/api/events/{event_id}/categories", status_code=201)
def create_category(event_id: int, payload: CategoryCreate, user=Depends(marshal_required), session=Depends(get_session)):
    event = services.get_event(session, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    services.assert_can_manage_event(session, user, event)
    category = services.add_category(session, event_id, payload)
    return {"category": _category_dict(category)}

def _managed_event(session: Session, user, event_id: int) -> models.Event:
    event = services.get_event(session, event_id)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    services.assert_can_manage_event(session, user, event)
    return event

@app.put("/api/events/{event_id}")
def update_event(event_id: int, payload: EventUpdate, user=Depends(marshal_required), session=Depends(get_session)):
    event = services.update_event(session, _managed_event(session, user, event_id), payload)
    return {"event": _event_dict(event)}

@app.delete("/api/events/{event_id}")
def delete_event(event_id: int, user=Depends(marshal_required), session=Depends(get_session)):
    services.delete_event(session, _managed_event(session, user, event_id))
    return {"message": "Event deleted successfully"}

@app.put("/api/events/{event_id}/categories/{category_id}")
def update_category(
    event_id: int, category_id: int, payload: CategoryUpdate, user=Depends(marshal_required), session=Depends(get_session)
):
    category = services.get_event_category(session, _managed_event(session, user, event_id), category_id)
    category = services.update_category(session, category, payload)
    return {"category": _category_dict(category)}

@app.delete("/api/events/{event_id}/categories/{category_id}")
def delete_category(event_id: int, category_id: int, user=Depends(marshal_required), session=Depends(get_session)):
    category = services.get_event_category(session, _managed_event(session, user, event_id), category_id)
    services.delete_category(session, category)
    return {"message": "Category removed from event successfully"}

# ---------------------------
# Registration (runner)
# ---------------------------

@app.post("/api/events/{event_id}/register", status_code=201)
def register_for_event(
    event_id: int, payload: RegistrationCreate, user=Depends(runner_required), session=Depends(get_session)
):
    p = services.register_for_event(session, user_id=user.id, event_id=event_id, category_id=payload.category_id)
    return {"message": "Successfully registered for event", "registration": _registration_dict(p)}

@app.get("/api/events/{event_id}/register")
def registration_status(event_id: int, user=Depends(login_required), session=Depends(get_session)):
    regs = services.list_user_registrations(session, user.id, event_id=event_id)
    return {"isRegistered": bool(regs), "registrations": [_registration_dict(p) for p in regs]}

@app.get("/api/runner/my-registrations")
def my_registrations(user=Depends(login_required), session=Depends(get_session)):
    regs = services.list_user_registrations(session, user.id)
    out = []
    for p in regs:
        row = _registration_dict(p)
        row["eventName"] = p.event.event_name
        row["eventDate"] = _iso(p.event.event_date)
        row["result"] = _result_dict(p.results[0] if p.results else None)
        out.append(row)
    return {"registrations": out, "total": len(out)}

@app.get("/api/runner/my-qr")
def my_qr(participantId: int, user=Depends(login_required), session=Depends(get_session)):
    p = session.get(models.Participant, participantId)
    if not p:
        raise HTTPException(status_code=404, detail="Participant not found")
    if p.user_id != user.id and not (user.can_record_results and services.can_manage_event(session, user, p.event)):
        raise HTTPException(status_code=403, detail="Access denied")
    if p.registration_status != models.APPROVED:
        raise HTTPException(status_code=400, detail="QR code is available once the registration is approved")
    content = p.qr_code_data or services.qr_content_for(p)
    return {
        "qrCode": {
            "dataUrl": make_qr_data_url(content),
            "content": content,
            "participant": {
                "id": p.id,
                "name": p.user.name,
                "event": p.event.event_name,
                "category": p.category.category_name,
            },
        }
    }

# ---------------------------
# Marshal
# ---------------------------

@app.get("/api/marshal/events-categories")
def marshal_events(user=Depends(marshal_required), session=Depends(get_session)):
    events = services.list_managed_events(session, user)
    out = []
    for e in events:
        categories = []
        for c in e.categories:
            approved = [p for p in c.participants if p.registration_status == models.APPROVED]
            categories.append({
                **_category_dict(c),
                "participantsCount": len(approved),
                "finishedCount": sum(1 for p in approved if p.results),
                "participants": [
                    {
                        "id": p.id,
                        "userId": p.user_id,
                        "name": p.user.name,
                        "email": p.user.email,
                        "hasResult": bool(p.results),
                        "result": _result_dict(p.results[0] if p.results else None),
                    }
                    for p in approved
                ],
            })
        out.append({"id": e.id, "name": e.event_name, "date": _iso(e.event_date), "location": e.location, "categories": categories})
    return {"success": True, "events": out, "totalEvents": len(out)}

@app.get("/api/marshal/participants")
def marshal_participants(
    eventId: int,
    status: Optional[str] = Query(default=None),
    user=Depends(marshal_required),
    session=Depends(get_session),
):
    event = services.get_event(session, eventId)
    if not event:
        raise HTTPException(status_code=404, detail="Event not found")
    services.assert_can_manage_event(session, user, event)
    rows = services.list_event_participants(session, eventId, status=status)
    return {
        "participants": [
            {
                **_registration_dict(p),
                "name": p.user.name,
                "email": p.user.email,
                "rejectionReason": p.rejection_reason,
            }
            for p in rows
        ],
        "total": len(rows),
    }

@app.post("/api/marshal/verify-payment")
def verify_payment(payload: PaymentVerification, user=Depends(marshal_required), session=Depends(get_session)):
    p = services.verify_payment(
        session, user, participant_id=payload.participant_id, action=payload.action, rejection_reason=payload.rejection_reason
    )
    verb = "approved" if payload.action == "approve" else "rejected"
    return {
        "message": f"Payment {verb} for {p.user.name}'s registration to {p.event.event_name}",
        "participant": {
            **_registration_dict(p),
            "verifiedAt": _iso(p.verified_at),
            "rejectionReason": p.rejection_reason,
        },
    }

@app.get("/api/marshal/qr-labels.pdf")
def qr_labels(categoryId: int, user=Depends(marshal_required), session=Depends(get_session)):
    category = services.get_category(session, categoryId)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    services.assert_can_manage_event(session, user, category.event)
    participants = services.list_approved_participants(session, categoryId)
    labels = [Label(code=p.qr_code_data or services.qr_content_for(p), caption=p.user.name) for p in participants]
    pdf = build_label_sheet_pdf(labels, title=f"{category.event.event_name} - {category.category_name}")
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="qr_labels_{categoryId}.pdf"'},
    )

@app.post("/api/marshal/scan-result")
def record_scan_result(payload: ResultCreate, user=Depends(marshal_required), session=Depends(get_session)):
    try:
        result = ranking.record_result(
            session,
            participant_id=payload.participant_id,
            category_id=payload.category_id,
            completion_time=payload.completion_time,
            notes=payload.notes,
            recorded_by=user.id,
        )
    except SQLAlchemyError:
        logger.exception("Error recording scan result")
        raise HTTPException(status_code=500, detail="Failed to record result")

    p = result.participant
    return {
        "success": True,
        "result": _result_dict(result),
        "participant": {
            "id": p.id,
            "name": p.user.name,
            "email": p.user.email,
            "category": p.category.category_name,
            "event": p.event.event_name,
        },
    }

@app.get("/api/marshal/scan-result", dependencies=[Depends(marshal_required)])
def category_rankings(categoryId: int, session=Depends(get_session)):
    return _rankings_payload(session, categoryId)

@app.post("/api/marshal/categories/{category_id}/recalculate")
def recalculate(category_id: int, user=Depends(marshal_required), session=Depends(get_session)):
    category = services.get_category(session, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    services.assert_can_manage_event(session, user, category.event)
    try:
        ordered = ranking.rerank_category(session, category_id)
    except SQLAlchemyError:
        logger.exception("Error recalculating rankings")
        raise HTTPException(status_code=500, detail="Failed to recalculate rankings")
    return {"success": True, "categoryId": category_id, "totalResults": len(ordered)}

# ---------------------------
# Public rankings
# ---------------------------

@app.get("/api/public/categories/{category_id}/rankings")
def public_rankings(category_id: int, session=Depends(get_session)):
    return _rankings_payload(session, category_id)

@app.get("/rankings/{category_id}", response_class=HTMLResponse)
def rankings_page(category_id: int, request: Request, user=Depends(get_current_user), session=Depends(get_session)):
    category = services.get_category(session, category_id)
    if not category:
        raise HTTPException(status_code=404, detail="Category not found")
    rows = ranking.get_rankings(session, category_id)
    return templates.TemplateResponse(
        request,
        "rankings.html",
        {"event": category.event, "category": category, "results": rows, "user": user},
    )

from .csv_export import router as csv_router
app.include_router(csv_router, prefix="/api", tags=["csv"])
