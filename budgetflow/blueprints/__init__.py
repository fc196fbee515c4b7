"""
School Budget Workflow
Blueprint registry and shared error handlers.
"""

import logging

from werkzeug.exceptions import HTTPException

from budgetflow.core.exceptions import (
    BadRequestError,
    ConflictError,
    ForbiddenError,
    LockTimeoutError,
    NoTemplateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from budgetflow.models import db
from budgetflow.utils.errors import E, api_error

logger = logging.getLogger(__name__)


def register_error_handlers(bp):
    """Map the service exception hierarchy onto JSON error responses for ``bp``."""

    @bp.errorhandler(BadRequestError)
    def _bad_request(exc):
        db.session.rollback()
        return api_error(E.VALIDATION_INVALID, str(exc), details=exc.details)

    @bp.errorhandler(UnauthorizedError)
    def _unauthorized(exc):
        return api_error(E.UNAUTHORIZED, str(exc))

    @bp.errorhandler(ForbiddenError)
    def _forbidden(exc):
        db.session.rollback()
        return api_error(E.FORBIDDEN, str(exc))

    @bp.errorhandler(NotFoundError)
    def _not_found(exc):
        db.session.rollback()
        return api_error(E.NOT_FOUND, str(exc))

    @bp.errorhandler(NoTemplateError)
    def _no_template(exc):
        db.session.rollback()
        return api_error(
            E.NO_TEMPLATE, str(exc),
            details={"school_id": exc.school_id, "sub_account_id": exc.sub_account_id},
        )

    @bp.errorhandler(ValidationError)
    def _validation(exc):
        db.session.rollback()
        return api_error(E.BUSINESS_RULE, str(exc), details=exc.details)

    @bp.errorhandler(ConflictError)
    def _conflict(exc):
        db.session.rollback()
        return api_error(E.CONFLICT_DUPLICATE, str(exc), existing_id=exc.existing_id)

    @bp.errorhandler(LockTimeoutError)
    def _locked(exc):
        db.session.rollback()
        return api_error(E.CONFLICT_LOCKED, str(exc))

    @bp.errorhandler(Exception)
    def _unexpected(exc):
        if isinstance(exc, HTTPException):
            return exc
        db.session.rollback()
        logger.exception("Unhandled error in %s", bp.name)
        return api_error(E.INTERNAL, "Internal server error")

    return bp
