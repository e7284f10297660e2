from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Protocol

from findclass.logging import get_logger
from findclass.service.clock import Clock, SystemClock
from findclass.service.credentials import UserStore
from findclass.service.errors import (
    DuplicatePendingApplication,
    ForbiddenError,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from findclass.service.gate import AuthContext
from findclass.storage.errors import PENDING_APPLICATION_UNIQUE, ConstraintViolation
from findclass.storage.models import (
    REQUESTABLE_ROLES,
    ApplicationStatus,
    RoleApplication,
    RoleApplicationHistoryEntry,
    TransitionResult,
    UserRole,
    new_id,
)

logger = get_logger(__name__)

CANCEL_COMMENT = "Cancelled by user"
DEFAULT_PENDING_LIMIT = 50
_DECISIONS = frozenset({ApplicationStatus.APPROVED, ApplicationStatus.REJECTED})


class RoleApplicationStore(Protocol):
    def create_application(
        self, application: RoleApplication, history: RoleApplicationHistoryEntry
    ) -> RoleApplication:
        """Insert a PENDING application and its first history entry together.

        Raises ConstraintViolation when the user already has a PENDING one.
        """
        ...

    def get_application(self, application_id: str) -> Optional[RoleApplication]: ...

    def list_user_applications(self, user_id: str) -> List[RoleApplication]: ...

    def list_pending_applications(self, limit: Optional[int] = None) -> List[RoleApplication]: ...

    def list_application_history(
        self, application_id: str
    ) -> List[RoleApplicationHistoryEntry]: ...

    def transition_application(
        self,
        application_id: str,
        *,
        to_status: ApplicationStatus,
        actor_id: str,
        at: datetime,
        comment: Optional[str] = None,
        owner_id: Optional[str] = None,
    ) -> Optional[TransitionResult]:
        """Move a PENDING application to ``to_status`` as one atomic write.

        Appends the history entry and, for APPROVED, sets the applicant's role
        in the same write. Returns None if the application is missing, is no
        longer PENDING, or is not owned by ``owner_id`` when one is given.
        """
        ...


@dataclass
class RoleRecord:
    role: UserRole
    status: ApplicationStatus
    applied_at: datetime
    processed_at: Optional[datetime] = None
    comment: Optional[str] = None
    application_id: Optional[str] = None


@dataclass
class RolesView:
    current_role: UserRole
    roles: List[RoleRecord] = field(default_factory=list)
    pending_application: Optional[RoleApplication] = None


def clean_note(value: Optional[str]) -> Optional[str]:
    """Blank notes are stored as absent."""
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


class RoleApplicationService:
    """PENDING -> APPROVED | REJECTED | CANCELLED, with an audit trail.

    Approval is the only code path that changes a user's role after sign-up.
    """

    def __init__(
        self,
        store: RoleApplicationStore,
        users: UserStore,
        *,
        clock: Optional[Clock] = None,
    ) -> None:
        self.store = store
        self.users = users
        self.clock = clock or SystemClock()
        self.logger = logger

    def apply(
        self, user_id: str, role: UserRole, reason: Optional[str] = None
    ) -> RoleApplication:
        try:
            role = UserRole(role)
        except ValueError as exc:
            raise ValidationError("unknown role", detail={"field": "role"}) from exc
        if role not in REQUESTABLE_ROLES:
            raise ValidationError(
                f"the {role.value} role cannot be requested", detail={"field": "role"}
            )
        user = self.users.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        if user.role is role:
            raise ValidationError(
                f"you already have the {role.value} role", detail={"field": "role"}
            )
        now = self.clock.now()
        application = RoleApplication(
            id=new_id(),
            user_id=user_id,
            role=role,
            reason=clean_note(reason),
            status=ApplicationStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        history = RoleApplicationHistoryEntry(
            id=new_id(),
            application_id=application.id,
            from_status=None,
            to_status=ApplicationStatus.PENDING,
            actor_id=user_id,
            created_at=now,
        )
        try:
            created = self.store.create_application(application, history)
        except ConstraintViolation as exc:
            if exc.constraint == PENDING_APPLICATION_UNIQUE:
                raise DuplicatePendingApplication() from exc
            raise
        self.logger.info(
            "role_application_submitted",
            user_id=user_id,
            role=role.value,
            application_id=created.id,
        )
        return created

    def cancel(self, user_id: str, application_id: str) -> RoleApplication:
        """Withdraw the caller's own PENDING application.

        Another user's application and an already decided one both look like a
        missing application to the caller.
        """
        result = self.store.transition_application(
            application_id,
            to_status=ApplicationStatus.CANCELLED,
            actor_id=user_id,
            at=self.clock.now(),
            comment=CANCEL_COMMENT,
            owner_id=user_id,
        )
        if result is None:
            raise NotFoundError(
                "pending role application not found",
                detail={"application_id": application_id},
            )
        self.logger.info(
            "role_application_cancelled", user_id=user_id, application_id=application_id
        )
        return result.application

    def approve(
        self,
        admin_id: str,
        application_id: str,
        decision: ApplicationStatus,
        comment: Optional[str] = None,
    ) -> RoleApplication:
        try:
            decision = ApplicationStatus(decision)
        except ValueError as exc:
            raise ValidationError("unknown decision", detail={"field": "decision"}) from exc
        if decision not in _DECISIONS:
            raise ValidationError(
                "decision must be APPROVED or REJECTED", detail={"field": "decision"}
            )
        admin = self.users.get_user(admin_id)
        if admin is None or admin.role is not UserRole.ADMIN or not admin.is_active:
            raise ForbiddenError("only administrators can process role applications")
        application = self.store.get_application(application_id)
        if application is None:
            raise NotFoundError(
                "role application not found", detail={"application_id": application_id}
            )
        if application.status is not ApplicationStatus.PENDING:
            raise InvalidTransition(
                "application is not pending",
                detail={"application_id": application_id, "status": application.status.value},
            )
        result = self.store.transition_application(
            application_id,
            to_status=decision,
            actor_id=admin_id,
            at=self.clock.now(),
            comment=clean_note(comment),
        )
        if result is None:
            # Decided or cancelled between the read above and the write
            raise InvalidTransition(
                "application is not pending", detail={"application_id": application_id}
            )
        self.logger.info(
            "role_application_decided",
            application_id=application_id,
            admin_id=admin_id,
            decision=decision.value,
            promoted=result.promoted_user is not None,
        )
        return result.application

    def list_pending(self, limit: Optional[int] = DEFAULT_PENDING_LIMIT) -> List[RoleApplication]:
        """Oldest applications fall off the end once ``limit`` is reached."""
        return sorted(
            self.store.list_pending_applications(limit), key=lambda a: a.created_at, reverse=True
        )

    def list_mine(self, user_id: str) -> List[RoleApplication]:
        return sorted(
            self.store.list_user_applications(user_id), key=lambda a: a.created_at, reverse=True
        )

    def get_detail(self, viewer: AuthContext, application_id: str) -> RoleApplication:
        application = self.store.get_application(application_id)
        if application is None:
            raise NotFoundError(
                "role application not found", detail={"application_id": application_id}
            )
        if not viewer.is_admin and application.user_id != viewer.user_id:
            raise ForbiddenError("not allowed to view this application")
        return application

    def get_history(
        self, viewer: AuthContext, application_id: str
    ) -> List[RoleApplicationHistoryEntry]:
        self.get_detail(viewer, application_id)
        return sorted(
            self.store.list_application_history(application_id), key=lambda h: h.created_at
        )

    def get_roles(self, user_id: str) -> RolesView:
        user = self.users.get_user(user_id)
        if user is None:
            raise NotFoundError("user not found", detail={"user_id": user_id})
        applications = self.list_mine(user_id)
        pending = next(
            (a for a in applications if a.status is ApplicationStatus.PENDING), None
        )
        roles = [
            RoleRecord(
                role=user.role,
                status=ApplicationStatus.APPROVED,
                applied_at=user.created_at,
                processed_at=user.created_at,
            )
        ]
        for app in applications:
            if app.status is ApplicationStatus.PENDING:
                continue
            roles.append(
                RoleRecord(
                    role=app.role,
                    status=app.status,
                    applied_at=app.created_at,
                    processed_at=app.updated_at,
                    comment=app.comment,
                    application_id=app.id,
                )
            )
        return RolesView(current_role=user.role, roles=roles, pending_application=pending)
