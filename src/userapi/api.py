"""FastAPI application exposing user management endpoints."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, Request, Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, generate_latest
from sqlalchemy.engine import Engine

from .auth import authorize_update, get_current_identity, require_admin
from .config import Settings
from .config import settings as default_settings
from .database import create_db_engine, create_session_factory, init_db
from .errors import InternalError, InvalidOperationError, RepositoryError, register_error_handlers
from .guard import DecisionEngine, LocalDecisionEngine, SecurityGuard
from .schemas import Identity
from .services import UserRepository
from .validation import validate_update, validate_user_id

logger = logging.getLogger(__name__)

# Prometheus counter to track API requests by method, endpoint and status code
REQUEST_COUNTER = Counter(
    "api_requests_total",
    "Total API requests",
    ["method", "endpoint", "status"],
)

router = APIRouter(prefix="/users", tags=["users"])


def get_repository(request: Request) -> UserRepository:
    return request.app.state.repository


@router.get("")
def fetch_all_users(repo: UserRepository = Depends(get_repository)):
    """Return every user in storage order."""
    logger.info("getting users")
    try:
        users = repo.list_all()
    except RepositoryError as exc:
        raise InternalError("Failed to fetch users") from exc
    logger.info("retrieved %s users", len(users))
    return {
        "message": "Successfully retrieved users",
        "users": [user.model_dump(mode="json") for user in users],
        "count": len(users),
    }


@router.get("/test-db")
def test_database(repo: UserRepository = Depends(get_repository)):
    """Check database connectivity with a trivial query."""
    logger.info("testing database connectivity")
    try:
        result = repo.ping()
    except RepositoryError as exc:
        raise InternalError(
            "Unable to reach the database", error="Database connection failed"
        ) from exc
    logger.info("database connection test successful")
    return {"message": "Database connection successful", "result": result}


@router.get("/{user_id}")
def fetch_user_by_id(user_id: str, repo: UserRepository = Depends(get_repository)):
    logger.info("getting user by id %s", user_id)
    uid = validate_user_id(user_id)
    try:
        user = repo.get_by_id(uid)
    except RepositoryError as exc:
        raise InternalError("Failed to fetch user") from exc
    return {"message": "User retrieved successfully", "user": user.model_dump(mode="json")}


@router.put("/{user_id}")
def update_user_by_id(
    user_id: str,
    payload: Any = Body(None),
    identity: Identity = Depends(get_current_identity),
    repo: UserRepository = Depends(get_repository),
):
    """Apply a partial update; owners edit themselves, admins edit anyone."""
    logger.info("updating user %s", user_id)
    uid = validate_user_id(user_id)
    fields = validate_update(payload)
    authorize_update(identity, uid, fields)
    try:
        user = repo.update(uid, fields)
    except RepositoryError as exc:
        raise InternalError("Failed to update user") from exc
    return {"message": "User updated successfully", "user": user.model_dump(mode="json")}


@router.delete("/{user_id}")
def delete_user_by_id(
    user_id: str,
    identity: Identity = Depends(require_admin),
    repo: UserRepository = Depends(get_repository),
):
    uid = validate_user_id(user_id)
    logger.info(
        "admin user %s (id %s) deleting user %s", identity.email, identity.id, uid
    )
    if identity.id == uid:
        raise InvalidOperationError("Administrators cannot delete their own account")
    try:
        deleted = repo.delete(uid)
    except RepositoryError as exc:
        raise InternalError("Failed to delete user") from exc
    return {"message": "User deleted successfully", "deletedUser": deleted.model_dump()}


def create_app(
    settings: Optional[Settings] = None,
    engine: Optional[Engine] = None,
    decision_engine: Optional[DecisionEngine] = None,
) -> FastAPI:
    """Build the application and wire its process-wide collaborators.

    ``decision_engine`` defaults to the in-process :class:`LocalDecisionEngine`.
    A hosted engine authenticated with ``settings.abuse_engine_key`` must be
    constructed by the caller and passed in here.
    """
    settings = settings or default_settings
    logging.basicConfig(level=settings.log_level.upper())

    engine = engine or create_db_engine(settings.database_url)
    init_db(engine)
    if decision_engine is None:
        decision_engine = LocalDecisionEngine()

    app = FastAPI(title=settings.api_title)
    app.state.settings = settings
    app.state.engine = engine
    app.state.decision_engine = decision_engine
    app.state.repository = UserRepository(create_session_factory(engine))
    register_error_handlers(app)

    app.middleware("http")(SecurityGuard(settings, decision_engine))

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        """Log incoming requests and their outcomes while updating metrics."""
        logger.info("request %s %s", request.method, request.url.path)
        try:
            response = await call_next(request)
        except Exception:
            REQUEST_COUNTER.labels(
                method=request.method, endpoint=request.url.path, status="500"
            ).inc()
            logger.exception("error handling %s %s", request.method, request.url.path)
            raise
        REQUEST_COUNTER.labels(
            method=request.method,
            endpoint=request.url.path,
            status=str(response.status_code),
        ).inc()
        logger.info(
            "response %s %s status %s",
            request.method,
            request.url.path,
            response.status_code,
        )
        return response

    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    app.include_router(router)
    logger.info("application configured for %s", settings.environment.value)
    return app
