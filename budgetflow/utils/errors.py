"""JSON error bodies shared by every blueprint.

Body shape::

    {"error": "<message>", "code": "ERR_...", "details": {...}, "existing_id": 3}

``details`` and top-level extras are omitted when empty.

    from budgetflow.utils.errors import api_error, E

    return api_error(E.NO_TEMPLATE, "No workflow", details={"school_id": 7})
"""

from __future__ import annotations

from flask import jsonify


# ── Error codes ───────────────────────────────────────────────────────
class E:
    """Error codes returned to clients, grouped by HTTP status."""

    # 400: malformed payload (bad period, negative cost, missing reason)
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # 401 / 403: no resolvable user, or wrong role / department
    UNAUTHORIZED = "ERR_UNAUTHORIZED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # 404
    NOT_FOUND = "ERR_NOT_FOUND"
    NO_TEMPLATE = "ERR_NO_TEMPLATE"

    # 409: duplicate budget / binding, or a named lock held elsewhere
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_LOCKED = "ERR_CONFLICT_LOCKED"

    # 422: well-formed request that the workflow state does not allow
    BUSINESS_RULE = "ERR_BUSINESS_RULE"

    INTERNAL = "ERR_INTERNAL"


_STATUS_BY_CODE: dict[str, int] = {
    E.VALIDATION_INVALID: 400,
    E.UNAUTHORIZED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.NO_TEMPLATE: 404,
    E.CONFLICT_DUPLICATE: 409,
    E.CONFLICT_LOCKED: 409,
    E.BUSINESS_RULE: 422,
    E.INTERNAL: 500,
}


def api_error(code: str, message: str, *, status: int | None = None,
              details: dict | None = None, **extra):
    """Build ``(response, status)`` for ``code``.

    ``extra`` keys with a non-None value are promoted to the top level of the
    body; the duplicate-budget response uses this for ``existing_id``.
    """
    body: dict = {"error": message, "code": code}
    if details:
        body["details"] = details
    body.update({k: v for k, v in extra.items() if v is not None})
    return jsonify(body), status or _STATUS_BY_CODE.get(code, 400)
