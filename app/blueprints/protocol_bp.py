"""
Protocol Review Blueprint.

HTTP surface of the protocol-review workflow engine.

Endpoints:
    POST   /api/v1/protocols
           Body: { "title", "principal_investigator_id", "committee": "irb|ibc",
                   "short_title", "protocol_type", "description", "form_data",
                   "submit": bool, "comment" }
           Returns: 201 with the created application.

    GET    /api/v1/protocols?status=&committee=&limit=&offset=
    GET    /api/v1/protocols/<id>

    POST   /api/v1/protocols/<id>/transitions
           Body: { "action", "decision", "comment",
                   "actor": {"id": <int>, "role": "office|investigator"},
                   "primary_reviewer_id", "secondary_reviewer_id", "review_type",
                   "registration_number", "expected_version" }
           Returns: 200 with {application, event, previous_status, new_status, action}.

    GET    /api/v1/protocols/<id>/transitions/available?role=
    GET    /api/v1/protocols/<id>/timeline?milestones=true
    GET    /api/v1/protocols/<id>/reviewer-candidates

Layer contract:
    - Blueprint: parse + validate input shape, build the Actor, call service.
    - NO db.session writes here; services own every commit. The database
      error handler only rolls back.
    - Business-rule failures arrive as typed exceptions and are mapped below.
"""

import logging

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from app.blueprints import paginate_query
from app.core.exceptions import (
    ActorNotPermittedError,
    ConcurrentModificationError,
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from app.models import db
from app.services import protocol_lifecycle, protocol_service, timeline
from app.services.protocol_lifecycle import Actor, ACTOR_ROLES
from app.utils.errors import E, api_error, exception_response
from app.utils.helpers import parse_bool_arg, parse_int

logger = logging.getLogger(__name__)

protocol_bp = Blueprint("protocol", __name__, url_prefix="/api/v1")


# ── Error handlers ───────────────────────────────────────────────────────────


@protocol_bp.errorhandler(NotFoundError)
def _handle_not_found(error: NotFoundError):
    return exception_response(error)


@protocol_bp.errorhandler(InvalidTransitionError)
def _handle_invalid_transition(error: InvalidTransitionError):
    return exception_response(error)


@protocol_bp.errorhandler(ValidationError)
def _handle_validation(error: ValidationError):
    # Well-formed input that breaks a business rule
    return exception_response(error, status=422)


@protocol_bp.errorhandler(ConcurrentModificationError)
def _handle_concurrent(error: ConcurrentModificationError):
    return api_error(
        E.CONCURRENT_MODIFICATION, str(error),
        details={"application_id": error.application_id},
    )


@protocol_bp.errorhandler(ActorNotPermittedError)
def _handle_forbidden(error: ActorNotPermittedError):
    return api_error(E.FORBIDDEN, str(error), details={"action": error.action})


@protocol_bp.errorhandler(ConflictError)
def _handle_conflict(error: ConflictError):
    return exception_response(error)


@protocol_bp.errorhandler(SQLAlchemyError)
def _handle_database(error: SQLAlchemyError):
    db.session.rollback()
    logger.error("Database error in protocol endpoint: %s", error, exc_info=error)
    return api_error(E.DATABASE, "Database error")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _json_body():
    """Return (data, err_response). Malformed or non-object bodies are a 400."""
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        return None, api_error(E.VALIDATION_INVALID, "Request body must be a JSON object")
    return data, None


# ── Application records ──────────────────────────────────────────────────────


@protocol_bp.route("/protocols", methods=["POST"])
def create_protocol():
    data, err = _json_body()
    if err:
        return err
    if not (data.get("title") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "title is required")
    if data.get("principal_investigator_id") in (None, ""):
        return api_error(E.VALIDATION_REQUIRED, "principal_investigator_id is required")

    # Legacy blobs are historical data; they cannot be written over HTTP
    payload = {k: v for k, v in data.items() if not k.startswith("legacy_")}
    result = protocol_service.create_application(payload, submit=bool(data.get("submit")))
    return jsonify(result), 201


@protocol_bp.route("/protocols", methods=["GET"])
def list_protocols():
    query = protocol_service.applications_query(
        status=request.args.get("status"),
        committee=request.args.get("committee"),
    )
    items, total = paginate_query(query)
    return jsonify({"items": [a.to_dict() for a in items], "total": total}), 200


@protocol_bp.route("/protocols/<int:application_id>", methods=["GET"])
def get_protocol(application_id):
    application = protocol_service.get_application(application_id)
    return jsonify(application.to_dict()), 200


# ── Workflow ─────────────────────────────────────────────────────────────────


@protocol_bp.route("/protocols/<int:application_id>/transitions", methods=["POST"])
def submit_transition(application_id):
    """Apply one workflow action to a protocol application."""
    data, err = _json_body()
    if err:
        return err

    action = data.get("action")
    if not isinstance(action, str) or not action.strip():
        return api_error(E.VALIDATION_REQUIRED, "action is required")

    try:
        actor = Actor.from_payload(data.get("actor"))
    except ValueError as exc:
        return api_error(E.VALIDATION_INVALID, str(exc), details={"actor": "invalid"})

    expected_version = None
    if data.get("expected_version") is not None:
        expected_version = parse_int(data["expected_version"])
        if expected_version is None:
            return api_error(E.VALIDATION_INVALID, "expected_version must be an integer")

    registration_number = data.get("registration_number")
    if registration_number is not None and not isinstance(registration_number, str):
        return api_error(
            E.VALIDATION_INVALID, "registration_number must be a string",
            details={"registration_number": "invalid"},
        )

    result = protocol_lifecycle.transition_application(
        application_id,
        action,
        actor,
        decision=data.get("decision"),
        comment=data.get("comment"),
        primary_reviewer_id=data.get("primary_reviewer_id"),
        secondary_reviewer_id=data.get("secondary_reviewer_id"),
        review_type=data.get("review_type"),
        registration_number=registration_number,
        expected_version=expected_version,
    )
    return jsonify(result), 200


@protocol_bp.route("/protocols/<int:application_id>/transitions/available", methods=["GET"])
def available_transitions(application_id):
    role = request.args.get("role")
    if role and role not in ACTOR_ROLES:
        return api_error(
            E.VALIDATION_INVALID,
            f"role must be one of: {', '.join(sorted(ACTOR_ROLES))}",
        )
    return jsonify(protocol_lifecycle.list_available_transitions(application_id, role)), 200


@protocol_bp.route("/protocols/<int:application_id>/timeline", methods=["GET"])
def get_timeline(application_id):
    entries = timeline.get_timeline(
        application_id,
        include_milestones=parse_bool_arg("milestones"),
    )
    return jsonify({"application_id": application_id, "entries": entries, "total": len(entries)}), 200


@protocol_bp.route("/protocols/<int:application_id>/reviewer-candidates", methods=["GET"])
def reviewer_candidates(application_id):
    application = protocol_service.get_application(application_id)
    pool = protocol_service.get_reviewer_pool(
        application.committee,
        limit=current_app.config.get("REVIEWER_POOL_LIMIT", 200),
    )
    return jsonify({
        "application_id": application.id,
        "committee": application.committee,
        "items": [c.to_dict() for c in pool],
    }), 200
