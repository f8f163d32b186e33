"""
Reference Blueprint — routing API for local and global references.

Endpoints (``<scope>`` is ``local`` or ``global``):
    POST   /api/v1/references/<scope>                               create
    GET    /api/v1/references/<scope>                               list (filters, sort, page)
    GET    /api/v1/references/<scope>/filters                       filter options
    GET    /api/v1/references/<scope>/dashboard                     dashboard counters
    POST   /api/v1/references/<scope>/bulk                          bulk action
    GET    /api/v1/references/<scope>/<id>                          detail + movements
    POST   /api/v1/references/<scope>/<id>/movements                hand-off
    GET    /api/v1/references/<scope>/<id>/movements                ledger
    GET    /api/v1/references/<scope>/<id>/replay                   ledger consistency
    POST   /api/v1/references/<scope>/<id>/replay/repair            repair from ledger
    POST   /api/v1/references/<scope>/<id>/priority                 change priority
    POST   /api/v1/references/<scope>/<id>/reopen-request           request reopen
    POST   /api/v1/references/<scope>/<id>/reopen-resolution        approve / reject reopen

The acting user comes from ``g.actor``; services own validation, permission
checks and commits.
"""

import logging

from flask import Blueprint, request

from reftrack.blueprints import current_actor, json_body, optional_bool, optional_int, register_error_handlers
from reftrack.core.exceptions import ValidationError
from reftrack.services import movement_ledger
from reftrack.services.bulk_reassign import bulk_apply
from reftrack.services.dashboard_service import get_dashboard_stats
from reftrack.services.helpers.scoped_queries import require_scope
from reftrack.services.permission import check_permission
from reftrack.services.reference_lifecycle import (
    DEFAULT_FORWARD_REMARKS,
    apply_movement,
    create_reference,
    get_reference_for,
    request_reopen,
    resolve_reopen,
    set_priority,
)
from reftrack.services.reference_query import get_filter_options, list_references
from reftrack.utils.helpers import parse_datetime
from reftrack.utils.errors import api_response

logger = logging.getLogger(__name__)

references_bp = Blueprint("references", __name__, url_prefix="/api/v1/references")
register_error_handlers(references_bp)


@references_bp.url_value_preprocessor
def _validate_scope(endpoint, values):
    if values and "scope" in values:
        require_scope(values["scope"])


# ═════════════════════════════════════════════════════════════════════════
# Collection
# ═════════════════════════════════════════════════════════════════════════


@references_bp.route("/<scope>", methods=["POST"])
def create(scope):
    """Create a reference.

    Body: {subject, marked_to: [id|email], remarks, priority?, eoffice_no?,
           delivery_mode?, delivery_details?, sent_at?}
    """
    data = json_body()
    marked_to = data.get("marked_to")
    if marked_to is not None and not isinstance(marked_to, list):
        marked_to = [marked_to]
    result = create_reference(
        scope,
        current_actor(),
        subject=data.get("subject"),
        marked_to=marked_to,
        remarks=data.get("remarks"),
        priority=data.get("priority"),
        eoffice_no=data.get("eoffice_no"),
        delivery_mode=data.get("delivery_mode"),
        delivery_details=data.get("delivery_details"),
        sent_at=parse_datetime(data.get("sent_at"), "sent_at"),
    )
    return api_response(result, "Reference created", status=201)


@references_bp.route("/<scope>", methods=["GET"])
def list_(scope):
    """List references.

    Query params: filter keys (status[], priority[], markedTo[], createdBy[],
    division[], labs[], subject, pendingDays), sortBy, sortOrder, page, limit.
    """
    args = request.args
    result = list_references(
        scope,
        current_actor(),
        args,
        sort_by=args.get("sortBy"),
        sort_order=args.get("sortOrder"),
        page=args.get("page"),
        limit=args.get("limit"),
    )
    return api_response(result, "References fetched")


@references_bp.route("/<scope>/filters", methods=["GET"])
def filters(scope):
    return api_response(get_filter_options(scope, current_actor()), "Filter options fetched")


@references_bp.route("/<scope>/dashboard", methods=["GET"])
def dashboard(scope):
    return api_response(get_dashboard_stats(scope, current_actor()), "Dashboard stats fetched")


@references_bp.route("/<scope>/bulk", methods=["POST"])
def bulk(scope):
    """Apply one action to many references.

    Body: {reference_ids: [..], action: {type, ...}}
    """
    data = json_body()
    result = bulk_apply(scope, current_actor(), data.get("reference_ids"), data.get("action"))
    message = f"{len(result['succeeded'])} succeeded, {len(result['failed'])} failed"
    return api_response(result, message)


# ═════════════════════════════════════════════════════════════════════════
# Single reference
# ═════════════════════════════════════════════════════════════════════════


@references_bp.route("/<scope>/<int:reference_id>", methods=["GET"])
def detail(scope, reference_id):
    ref = get_reference_for(scope, reference_id, current_actor())
    data = ref.to_dict()
    data["movements"] = movement_ledger.MovementHistory(ref.id).to_list()
    return api_response(data, "Reference fetched")


@references_bp.route("/<scope>/<int:reference_id>/movements", methods=["POST"])
def move(scope, reference_id):
    """Hand the reference on.

    Body: {marked_to: [id|email], status, remarks?, expected_version?,
           override?, idempotency_key?}
    ``Idempotency-Key`` header is accepted in place of the body field.
    """
    data = json_body()
    status = data.get("status")
    if not status:
        raise ValidationError("status is required", details={"status": "required"})
    marked_to = data.get("marked_to") or []
    if not isinstance(marked_to, list):
        marked_to = [marked_to]
    result = apply_movement(
        scope,
        reference_id,
        current_actor(),
        marked_to,
        status,
        data.get("remarks") or DEFAULT_FORWARD_REMARKS,
        expected_version=optional_int(data.get("expected_version"), "expected_version"),
        override=optional_bool(data.get("override"), "override"),
        idempotency_key=data.get("idempotency_key") or request.headers.get("Idempotency-Key"),
    )
    status_code = 200 if result["idempotent_replay"] else 201
    return api_response(result, "Reference moved", status=status_code)


@references_bp.route("/<scope>/<int:reference_id>/movements", methods=["GET"])
def movements(scope, reference_id):
    ref = get_reference_for(scope, reference_id, current_actor())
    history = movement_ledger.list_movements(scope, ref.id)
    return api_response(history.to_list(), "Movements fetched")


@references_bp.route("/<scope>/<int:reference_id>/replay", methods=["GET"])
def replay(scope, reference_id):
    ref = get_reference_for(scope, reference_id, current_actor())
    return api_response(movement_ledger.check_consistency(scope, ref.id), "Ledger replayed")


@references_bp.route("/<scope>/<int:reference_id>/replay/repair", methods=["POST"])
def repair(scope, reference_id):
    actor = current_actor()
    ref = get_reference_for(scope, reference_id, actor)
    check_permission(actor, scope, "override")
    result = movement_ledger.repair_from_ledger(scope, ref.id, actor_id=actor.id)
    return api_response(result, "Reference repaired" if result["repaired"] else "Reference already consistent")


@references_bp.route("/<scope>/<int:reference_id>/priority", methods=["POST"])
def priority(scope, reference_id):
    """Body: {priority, expected_version?, override?}"""
    data = json_body()
    result = set_priority(
        scope,
        reference_id,
        current_actor(),
        data.get("priority"),
        expected_version=optional_int(data.get("expected_version"), "expected_version"),
        override=optional_bool(data.get("override"), "override"),
    )
    return api_response(result, "Priority updated")


@references_bp.route("/<scope>/<int:reference_id>/reopen-request", methods=["POST"])
def reopen_request(scope, reference_id):
    """Body: {reason}"""
    data = json_body()
    result = request_reopen(scope, reference_id, current_actor(), data.get("reason"))
    return api_response(result, "Reopen request submitted", status=201)


@references_bp.route("/<scope>/<int:reference_id>/reopen-resolution", methods=["POST"])
def reopen_resolution(scope, reference_id):
    """Body: {approve: bool}"""
    data = json_body()
    approve = data.get("approve")
    if approve is None:
        raise ValidationError("approve is required", details={"approve": "required"})
    approve = optional_bool(approve, "approve")
    result = resolve_reopen(scope, reference_id, current_actor(), approve)
    return api_response(result, "Reopen request approved" if approve else "Reopen request rejected")
