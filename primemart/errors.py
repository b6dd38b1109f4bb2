from typing import Dict, Optional

from flask import jsonify
from pymongo.errors import PyMongoError


class ApiError(Exception):
    status_code = 500
    default_message = "Server error"

    def __init__(self, message: Optional[str] = None, details: Optional[Dict] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details or {}

    def to_payload(self) -> Dict[str, object]:
        payload: Dict[str, object] = {"message": self.message}
        if self.details:
            payload.update(self.details)
        return payload


class ValidationError(ApiError):
    status_code = 400
    default_message = "Invalid request."


class ConflictError(ApiError):
    # Duplicate resources are reported as a plain bad request.
    status_code = 400
    default_message = "Resource already exists."


class AuthenticationError(ApiError):
    status_code = 401
    default_message = "Authentication required."


class AuthorizationError(ApiError):
    status_code = 403
    default_message = "You need additional permissions to perform this action."


class NotFoundError(ApiError):
    status_code = 404
    default_message = "Not found."


class DependencyError(ApiError):
    status_code = 500
    default_message = "A downstream service is unavailable."


class RenderError(DependencyError):
    default_message = "The invoice document could not be rendered."


class PaymentGatewayError(DependencyError):
    default_message = "The payment provider could not be reached."


class PaymentIncompleteError(ValidationError):
    default_message = "Payment has not been completed."


def register_error_handlers(app):
    @app.errorhandler(ApiError)
    def handle_api_error(error: ApiError):
        if error.status_code >= 500:
            app.logger.error("%s: %s", type(error).__name__, error.message)
            return jsonify({"message": "Server error", "error": error.message}), error.status_code
        return jsonify(error.to_payload()), error.status_code

    @app.errorhandler(PyMongoError)
    def handle_database_error(error: PyMongoError):
        app.logger.error("Database error: %s", error)
        return jsonify({"message": "Server error", "error": "Database unavailable."}), 500

    @app.errorhandler(404)
    def handle_missing_route(_error):
        return jsonify({"message": "Not found."}), 404

    @app.errorhandler(405)
    def handle_wrong_method(_error):
        return jsonify({"message": "Method not allowed."}), 405
