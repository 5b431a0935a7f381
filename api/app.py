from __future__ import annotations
from contextlib import asynccontextmanager
from fastapi import Depends, FastAPI, Header, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import logging, typing as t

from assess_core.config import load_config
from assess_core.errors import AssessmentError, Unauthorized
from assess_core.instruments import get_instrument, list_instruments
from assess_core.store import AssessmentStore
from assess_core.types import Session

log = logging.getLogger(__name__)

ALLOWED_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]

# ---- Schemas ----
class LoginReq(BaseModel):
    actor_id: str
    role: str             # "subject" | "clinician"
    display_name: str | None = None

class RegisterSubjectReq(BaseModel):
    subject_id: str
    display_name: str | None = None
    age: float | None = Field(default=None, ge=0)
    weight_kg: float | None = Field(default=None, ge=0)
    height_cm: float | None = Field(default=None, ge=0)

class UpdateSubjectReq(BaseModel):
    display_name: str | None = None
    age: float | None = Field(default=None, ge=0)
    weight_kg: float | None = Field(default=None, ge=0)
    height_cm: float | None = Field(default=None, ge=0)

class OwnerReq(BaseModel):
    clinician_id: str | None = None

class TaskReq(BaseModel):
    instrument_id: str
    origin: str | None = None

class AnswerReq(BaseModel):
    item_id: str
    value: int | str | None = None
    task_id: str | None = None

class BulkAnswerReq(BaseModel):
    items: dict[str, int | str | None]
    task_id: str | None = None

class ScoreReq(BaseModel):
    answers: dict[str, int | str | None] = {}

class SubmitReq(BaseModel):
    subject_id: str
    instrument_id: str
    answers: dict[str, int | str | None] | None = None  # None: use the stored answers

class ReviewReq(BaseModel):
    visible_to_subject: bool | None = None
    clinician_notes: str | None = None

class MaintenanceReq(BaseModel):
    subject_id: str | None = None


# ---- Helpers ----
def _out(obj: t.Any) -> t.Any:
    return jsonable_encoder(obj)


def _store(request: Request) -> AssessmentStore:
    return request.app.state.store


def _session(request: Request, x_session_id: str | None = Header(default=None)) -> Session:
    if not x_session_id:
        raise Unauthorized("missing X-Session-Id header")
    return _store(request).current_session(x_session_id)


def create_app(data_dir: str | None = None, config: dict | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = dict(config) if config is not None else load_config()
        store = AssessmentStore(data_dir, config=cfg)
        app.state.store = store
        try:
            yield
        finally:
            store.close()

    app = FastAPI(title="Assessment Task Store API", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
        allow_credentials=False,
    )

    @app.exception_handler(AssessmentError)
    async def _assessment_error(_request: Request, exc: AssessmentError):
        if exc.status_code >= 500:
            log.warning("%s: %s", type(exc).__name__, exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"error": type(exc).__name__, "detail": exc.detail})

    # ---- Health / static ----
    @app.get("/")
    def root():
        return {"status": "ok", "service": "assessment-task-store"}

    @app.get("/health")
    def health(request: Request):
        store = _store(request)
        return {
            "data_dir": str(store.durable.root),
            "durable_degraded": store.answers.degraded,
            "pending_writes": store.answers.pending,
            "session_active": store.guard.current is not None,
        }

    @app.get("/instruments")
    def instruments():
        return {"instruments": [ins.summary() for ins in list_instruments()]}

    @app.get("/instruments/{instrument_id}")
    def instrument(instrument_id: str):
        return get_instrument(instrument_id).summary()

    # ---- Sessions ----
    @app.post("/session/login")
    def login(req: LoginReq, request: Request):
        sess = _store(request).login(req.actor_id, req.role, req.display_name)
        return {"session_id": sess.session_id, "actor_id": sess.actor_id, "role": sess.role.value}

    @app.post("/session/logout")
    def logout(request: Request, sess: Session = Depends(_session)):
        _store(request).logout(sess)
        return {"ok": True}

    # ---- Subjects ----
    @app.post("/subjects")
    def register_subject(req: RegisterSubjectReq, request: Request, sess: Session = Depends(_session)):
        demo = req.model_dump(exclude={"subject_id", "display_name"}, exclude_none=True)
        subject = _store(request).register_subject(sess, req.subject_id, req.display_name, **demo)
        return _out(subject)

    @app.get("/subjects")
    def list_subjects(request: Request, q: str | None = Query(None), sess: Session = Depends(_session)):
        store = _store(request)
        found = store.search_subjects(sess, q) if q else store.list_subjects(sess)
        return {"subjects": _out(found)}

    @app.get("/subjects/{subject_id}")
    def get_subject(subject_id: str, request: Request, sess: Session = Depends(_session)):
        return _out(_store(request).get_subject(sess, subject_id))

    @app.patch("/subjects/{subject_id}")
    def update_subject(subject_id: str, req: UpdateSubjectReq, request: Request, sess: Session = Depends(_session)):
        demo = req.model_dump(exclude={"display_name"}, exclude_unset=True)
        return _out(_store(request).update_subject(sess, subject_id, req.display_name, **demo))

    @app.post("/subjects/{subject_id}/owner")
    def assign_owner(subject_id: str, req: OwnerReq, request: Request, sess: Session = Depends(_session)):
        return _out(_store(request).assign_owner(sess, subject_id, req.clinician_id))

    # ---- Tasks ----
    @app.post("/subjects/{subject_id}/tasks")
    def get_or_create_task(subject_id: str, req: TaskReq, request: Request, sess: Session = Depends(_session)):
        return _out(_store(request).get_or_create_task(sess, subject_id, req.instrument_id, req.origin))

    @app.get("/subjects/{subject_id}/tasks")
    def list_tasks(subject_id: str, request: Request, sess: Session = Depends(_session)):
        return {"tasks": _out(_store(request).list_tasks(sess, subject_id))}

    @app.post("/tasks/{task_id}/start")
    def start_task(task_id: str, request: Request, sess: Session = Depends(_session)):
        return _out(_store(request).start_task(sess, task_id))

    # ---- Answers ----
    @app.put("/subjects/{subject_id}/answers/{instrument_id}")
    def set_answer(subject_id: str, instrument_id: str, req: AnswerReq, request: Request, sess: Session = Depends(_session)):
        answers = _store(request).set_answer(sess, subject_id, instrument_id, req.item_id, req.value, req.task_id)
        return _out(answers)

    @app.put("/subjects/{subject_id}/answers/{instrument_id}/bulk")
    def set_answers(subject_id: str, instrument_id: str, req: BulkAnswerReq, request: Request, sess: Session = Depends(_session)):
        return _out(_store(request).set_answers(sess, subject_id, instrument_id, req.items, req.task_id))

    @app.get("/subjects/{subject_id}/answers/{instrument_id}")
    def get_answers(
        subject_id: str,
        instrument_id: str,
        request: Request,
        task_id: str | None = Query(None),
        sess: Session = Depends(_session),
    ):
        return _out(_store(request).get_answers(sess, subject_id, instrument_id, task_id))

    @app.get("/subjects/{subject_id}/answers/{instrument_id}/history")
    def answer_history(subject_id: str, instrument_id: str, request: Request, sess: Session = Depends(_session)):
        return {"history": _out(_store(request).task_answer_history(sess, subject_id, instrument_id))}

    # ---- Scoring / responses ----
    @app.post("/score/{instrument_id}")
    def compute_score(instrument_id: str, req: ScoreReq, request: Request, sess: Session = Depends(_session)):
        return _store(request).compute_score(sess, instrument_id, req.answers).to_dict()

    @app.post("/tasks/{task_id}/submit")
    def submit(task_id: str, req: SubmitReq, request: Request, sess: Session = Depends(_session)):
        resp = _store(request).submit_response(sess, task_id, req.subject_id, req.instrument_id, req.answers)
        return _out(resp)

    @app.get("/subjects/{subject_id}/responses")
    def list_responses(subject_id: str, request: Request, sess: Session = Depends(_session)):
        return {"responses": _out(_store(request).list_responses(sess, subject_id))}

    @app.get("/responses/{response_id}")
    def get_response(response_id: str, request: Request, sess: Session = Depends(_session)):
        return _out(_store(request).get_response(sess, response_id))

    @app.patch("/responses/{response_id}")
    def review_response(response_id: str, req: ReviewReq, request: Request, sess: Session = Depends(_session)):
        resp = _store(request).review_response(sess, response_id, req.visible_to_subject, req.clinician_notes)
        return _out(resp)

    # ---- Maintenance / dashboards ----
    @app.post("/maintenance")
    def maintenance(req: MaintenanceReq, request: Request, sess: Session = Depends(_session)):
        return _store(request).run_maintenance(sess, req.subject_id).to_dict()

    @app.get("/subjects/{subject_id}/consistency")
    def consistency(subject_id: str, request: Request, sess: Session = Depends(_session)):
        return _store(request).validate_subject_data(sess, subject_id)

    @app.get("/subjects/{subject_id}/dashboard")
    def subject_dashboard(subject_id: str, request: Request, sess: Session = Depends(_session)):
        return _out(_store(request).subject_dashboard(sess, subject_id))

    @app.get("/dashboard/clinician")
    def clinician_dashboard(request: Request, sess: Session = Depends(_session)):
        return _out(_store(request).clinician_summary(sess))

    # ---- Audit ----
    @app.get("/audit.json")
    def audit_json(request: Request, sess: Session = Depends(_session)):
        return _store(request).export_audit(sess, "json")

    @app.get("/audit.csv")
    def audit_csv(request: Request, sess: Session = Depends(_session)):
        body = _store(request).export_audit(sess, "csv")
        return Response(
            content=body,
            media_type="text/csv",
            headers={"Content-Disposition": "attachment; filename=\"audit.csv\""},
        )

    return app


app = create_app()
