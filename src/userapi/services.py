"""Service layer for reading and mutating user records."""

import logging
from typing import Any, Dict, List

from sqlalchemy import delete, select, text, update
from sqlalchemy.orm import Session, sessionmaker

from .errors import NotFoundError, RepositoryError
from .models.user import User, utcnow
from .schemas import DeletedUser, UserResponse

logger = logging.getLogger(__name__)


def _handle_service_error(session: Session, exc: Exception, action: str) -> None:
    """Rollback the transaction and re-raise as a repository error."""
    session.rollback()
    if isinstance(exc, NotFoundError):
        raise exc
    logger.exception("service layer error while trying to %s", action)
    raise RepositoryError(f"Failed to {action}: {exc}") from exc


class UserRepository:
    """CRUD operations over the ``users`` table.

    Each call runs in its own session. Update and delete look the row up
    first and then issue a separate statement, so a row removed in between
    is reported as not found by the second statement.
    """

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def list_all(self) -> List[UserResponse]:
        session: Session = self.session_factory()
        try:
            rows = session.scalars(select(User).order_by(User.id)).all()
            logger.info("database query successful, found %s users", len(rows))
            return [UserResponse.model_validate(row) for row in rows]
        except Exception as exc:
            _handle_service_error(session, exc, "fetch users")
        finally:
            session.close()

    def _get(self, session: Session, user_id: int) -> User:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError()
        return user

    def get_by_id(self, user_id: int) -> UserResponse:
        session: Session = self.session_factory()
        try:
            return UserResponse.model_validate(self._get(session, user_id))
        except Exception as exc:
            _handle_service_error(session, exc, "fetch user")
        finally:
            session.close()

    def update(self, user_id: int, fields: Dict[str, Any]) -> UserResponse:
        """Apply ``fields`` to the user and refresh ``updated_at``."""
        logger.info("updating user %s fields=%s", user_id, sorted(fields))
        session: Session = self.session_factory()
        try:
            self._get(session, user_id)
            result = session.execute(
                update(User)
                .where(User.id == user_id)
                .values(**fields, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError()
            session.commit()
            user = session.get(User, user_id, populate_existing=True)
            if user is None:
                raise NotFoundError()
            logger.info("user %s updated", user_id)
            return UserResponse.model_validate(user)
        except Exception as exc:
            _handle_service_error(session, exc, "update user")
        finally:
            session.close()

    def delete(self, user_id: int) -> DeletedUser:
        logger.info("deleting user %s", user_id)
        session: Session = self.session_factory()
        try:
            deleted = DeletedUser.model_validate(self._get(session, user_id))
            result = session.execute(delete(User).where(User.id == user_id))
            if result.rowcount == 0:
                raise NotFoundError()
            session.commit()
            logger.info("user %s deleted", user_id)
            return deleted
        except Exception as exc:
            _handle_service_error(session, exc, "delete user")
        finally:
            session.close()

    def ping(self) -> List[Dict[str, Any]]:
        """Run a trivial query to prove the database is reachable."""
        session: Session = self.session_factory()
        try:
            rows = session.execute(text("SELECT 1 AS test")).mappings().all()
            return [dict(row) for row in rows]
        except Exception as exc:
            _handle_service_error(session, exc, "reach the database")
        finally:
            session.close()
