"""Crisis Engine HTTP handler - escalation endpoints.

Assessments produced by the Safety Service are posted to /escalations;
professionals close their cases through /escalations/<id>/resolve.
All escalation actions are audit logged by the orchestrator.
"""
import logging
import os
from flask import Flask, request, jsonify

from safeharbor.shared.models import (
    CrisisAssessment,
    ProfessionalAvailability,
    ProfessionalStatus,
)
from safeharbor.shared.store import DuplicateError, InMemoryStore
from safeharbor.shared.utils import hash_pii, configure_pii_salt
from safeharbor.services.monitoring_service import SafetyMonitor
from safeharbor.services.professional_service import ProfessionalMatcher
from .gateways import FernetSecureChannelGateway, SnsNotificationGateway
from .orchestrator import EscalationOrchestrator

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Configure PII salt
pii_salt = os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars")
configure_pii_salt(pii_salt)

# Initialize collaborators
store = InMemoryStore()
matcher = ProfessionalMatcher(store=store)
monitor = SafetyMonitor(store=store)
orchestrator = EscalationOrchestrator(
    matcher=matcher,
    channel_gateway=FernetSecureChannelGateway(
        key=os.getenv("CHANNEL_ENCRYPTION_KEY") or None,
        store=store,
    ),
    notification_gateway=SnsNotificationGateway(
        topic_arn=os.getenv("NOTIFICATION_TOPIC_ARN"),
        enabled=os.getenv("NOTIFICATIONS_ENABLED", "false").lower() == "true",
    ),
    store=store,
    monitor=monitor,
)
monitor.escalation_stats_provider = orchestrator.get_escalation_stats


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "crisis-engine",
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check. Reports capacity; an empty registry is still ready."""
    return jsonify({
        "status": "ready",
        "available_professionals": matcher.available_count(),
    }), 200


@app.route("/professionals", methods=["POST"])
def register_professional():
    """Register a professional.

    Request Body:
        {
            "id": "pro_001",
            "specialties": ["suicide_prevention"],
            "languages": ["en"],
            "max_workload": 5,
            "emergency_contact": true,
            "estimated_response_time": 10
        }
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Request body required"}), 400
    if not data.get("id"):
        return jsonify({"error": "Missing id"}), 400

    try:
        professional = ProfessionalAvailability(
            id=data["id"],
            name=data.get("name", ""),
            specialties=frozenset(data.get("specialties", [])),
            languages=frozenset(data.get("languages", ["en"])),
            max_workload=int(data.get("max_workload", 5)),
            current_workload=int(data.get("current_workload", 0)),
            emergency_contact=bool(data.get("emergency_contact", False)),
            estimated_response_time=int(data.get("estimated_response_time", 10)),
            status=ProfessionalStatus(data.get("status", "available")),
        )
    except (TypeError, ValueError) as e:
        return jsonify({"error": str(e)}), 400

    try:
        matcher.register_professional(professional)
    except DuplicateError:
        return jsonify({"error": "Professional already registered"}), 409

    return jsonify(professional.to_dict()), 201


@app.route("/escalations", methods=["POST"])
def create_escalation():
    """Start an escalation from a crisis assessment.

    Request Body:
        {
            "user_id": "user_789",
            "session_id": "sess_456",
            "assessment": {...}  (CrisisAssessment.to_dict() output)
        }

    Response:
        201 with the escalation, or 200 with a null escalation when the
        assessment is not actionable
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Request body required"}), 400

    user_id = data.get("user_id")
    session_id = data.get("session_id")
    if not user_id or not session_id:
        return jsonify({"error": "Missing user_id or session_id"}), 400

    try:
        assessment = CrisisAssessment.from_dict(data.get("assessment") or {})
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("ESCALATION_REQUEST_INVALID", extra={"error": str(e)})
        return jsonify({"error": "Invalid assessment"}), 400

    logger.info(
        "ESCALATION_REQUESTED",
        extra={
            "session_id": session_id,
            "user_id_hash": hash_pii(user_id),
            "assessment_id": assessment.assessment_id,
            "severity": assessment.severity.value,
        }
    )

    escalation = orchestrator.evaluate_escalation(user_id, session_id, assessment)
    if escalation is None:
        return jsonify({"escalation": None}), 200
    return jsonify({"escalation": escalation.to_dict()}), 201


@app.route("/escalations/active", methods=["GET"])
def active_escalations():
    """List non-terminal escalations."""
    escalations = orchestrator.get_active_escalations()
    return jsonify({
        "escalations": [e.to_dict() for e in escalations],
        "count": len(escalations),
    }), 200


@app.route("/escalations/<escalation_id>", methods=["GET"])
def get_escalation(escalation_id: str):
    """Get an escalation with its audit trail."""
    escalation = orchestrator.get_escalation(escalation_id)
    if escalation is None:
        return jsonify({"error": "Escalation not found"}), 404
    return jsonify(escalation.to_dict()), 200


@app.route("/escalations/<escalation_id>/resolve", methods=["POST"])
def resolve_escalation(escalation_id: str):
    """Resolve an open escalation.

    Request Body:
        {
            "outcome": "safety plan agreed",
            "resolved_by": "pro_001"
        }
    """
    data = request.get_json(silent=True)
    if not data:
        return jsonify({"error": "Request body required"}), 400

    outcome = data.get("outcome")
    if not outcome:
        return jsonify({"error": "Missing outcome"}), 400

    resolved = orchestrator.resolve_escalation(
        escalation_id,
        outcome,
        resolved_by=data.get("resolved_by", "professional"),
    )
    if not resolved:
        if orchestrator.get_escalation(escalation_id) is None:
            return jsonify({"error": "Escalation not found"}), 404
        return jsonify({"error": "Escalation is not open", "resolved": False}), 409

    return jsonify({
        "resolved": True,
        "escalation": orchestrator.get_escalation(escalation_id).to_dict(),
    }), 200


if __name__ == "__main__":
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Run development server
    port = int(os.getenv("PORT", "8002"))
    app.run(host="0.0.0.0", port=port, debug=False)
