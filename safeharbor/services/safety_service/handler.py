"""Safety Service HTTP handler - crisis classification endpoint.

Every user message passes through /classify before any other processing.
User identifiers are hashed with hash_pii() before they are logged.
"""
import logging
import os
from flask import Flask, request, jsonify

from safeharbor.shared.utils import hash_pii, configure_pii_salt
from .config import SafetyConfig
from .service import TriageService

logger = logging.getLogger(__name__)

# Initialize Flask app
app = Flask(__name__)

# Configure PII salt from environment
pii_salt = os.getenv("PII_HASH_SALT", "default_dev_salt_change_in_production_32chars")
configure_pii_salt(pii_salt)

config = SafetyConfig(
    normalization_enabled=os.getenv("NORMALIZATION_ENABLED", "true").lower() == "true",
    pattern_version=os.getenv("PATTERN_VERSION", SafetyConfig.pattern_version),
)
triage_service = TriageService(config=config)


@app.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "safety-service",
        "pattern_version": config.pattern_version,
    }), 200


@app.route("/ready", methods=["GET"])
def ready():
    """Readiness check - verifies the triage pipeline is initialized."""
    if triage_service is None:
        return jsonify({"status": "not_ready", "reason": "triage_not_initialized"}), 503
    return jsonify({"status": "ready"}), 200


@app.route("/classify", methods=["POST"])
def classify_message():
    """Classify a message for crisis risk.

    Request Body:
        {
            "message": "User message text",
            "user_id": "user_789",
            "session_id": "sess_456",
            "context": {
                "conversation_history": ["..."],
                "session_metadata": {"hour": 3, "messages_per_minute": 6}
            } (optional)
        }

    Response:
        {
            "assessment": {...} | null,
            "actionable": true | false,
            "suppressed": true | false,
            "applied_rules": ["negation_detected", ...],
            "latency_ms": 3.2
        }

    Error Handling:
        A classification failure returns 200 with a null assessment and an
        error field; the caller treats it as "no assessment", not "safe".
    """
    data = request.get_json(silent=True)
    if not data:
        logger.warning("CLASSIFY_REQUEST_INVALID", extra={"reason": "empty_body"})
        return jsonify({"error": "Request body required"}), 400

    message = data.get("message")
    user_id = data.get("user_id")
    session_id = data.get("session_id")
    if not isinstance(message, str):
        logger.warning("CLASSIFY_REQUEST_INVALID", extra={"reason": "missing_message"})
        return jsonify({"error": "Missing required field: message"}), 400
    if not user_id or not session_id:
        logger.warning("CLASSIFY_REQUEST_INVALID", extra={"reason": "missing_ids"})
        return jsonify({"error": "Missing required field: user_id or session_id"}), 400

    context = data.get("context")
    if context is not None and not isinstance(context, dict):
        return jsonify({"error": "context must be an object"}), 400

    logger.info(
        "CLASSIFY_REQUESTED",
        extra={
            "session_id": session_id,
            "user_id_hash": hash_pii(user_id),
            "message_length": len(message),
        }
    )

    result = triage_service.evaluate(user_id, session_id, message, context)

    body = {
        "assessment": result.assessment.to_dict() if result.assessment else None,
        "actionable": result.actionable,
        "suppressed": result.suppressed,
        "applied_rules": list(result.applied_rules),
        "latency_ms": result.latency_ms,
    }
    if result.error:
        body["error"] = "Classification failed - no assessment produced"
    return jsonify(body), 200


if __name__ == "__main__":
    # Configure logging
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Run development server
    port = int(os.getenv("PORT", "8001"))
    app.run(host="0.0.0.0", port=port, debug=False)
