import os
from typing import Optional

from flask import Flask, jsonify, request, send_from_directory
from flask_cors import CORS
from flask_jwt_extended import JWTManager, jwt_required
from flask_pymongo import PyMongo
from werkzeug.middleware.proxy_fix import ProxyFix

from primemart.audit import AuditLog
from primemart.catalog import Catalog, serialize_product
from primemart.config import configure_app
from primemart.counters import SequenceAllocator
from primemart.dashboard import Dashboard
from primemart.errors import ValidationError, register_error_handlers
from primemart.identity import IdentityService
from primemart.invoices import InvoiceComposer
from primemart.lifecycle import OrderLifecycle
from primemart.mailer import ResendMailer
from primemart.notifications import NotificationService
from primemart.orders import PENDING, normalize_order_request, safe_positive_int, serialize_order
from primemart.payments import PaymentReconciler, StripeGateway
from primemart.rendering import HtmlPdfRenderer
from primemart.storage import LocalBlobStore


def create_app(
    test_config: Optional[dict] = None,
    database=None,
    mailer=None,
    renderer=None,
    blob_store=None,
    payment_gateway=None,
) -> Flask:
    """Create and configure the Flask application.

    Collaborators default to their production adapters; tests pass fakes and
    an in-memory database instead.
    """
    app = Flask(__name__)
    configure_app(app, test_config)

    # Honor proxy headers so generated invoice links keep the public HTTPS origin.
    trusted_proxy_hops = app.config["TRUSTED_PROXY_HOPS"]
    if trusted_proxy_hops:
        app.wsgi_app = ProxyFix(
            app.wsgi_app,
            x_for=trusted_proxy_hops,
            x_proto=trusted_proxy_hops,
            x_host=trusted_proxy_hops,
            x_port=trusted_proxy_hops,
        )

    # --- Initialize extensions ---
    CORS(app, supports_credentials=True, origins=app.config["CORS_ORIGINS"] or "*")
    jwt = JWTManager(app)

    @jwt.unauthorized_loader
    def missing_token(reason: str):
        return jsonify({"message": "Not authorized, no token", "error": reason}), 401

    @jwt.invalid_token_loader
    def invalid_token(reason: str):
        return jsonify({"message": "Not authorized, token failed", "error": reason}), 401

    @jwt.expired_token_loader
    def expired_token(_header, _payload):
        return jsonify({"message": "Session expired. Please log in again."}), 401

    register_error_handlers(app)

    if database is None:
        database = PyMongo(app).db
    db = database

    # --- Services ---
    logger = app.logger
    seller = app.config["SELLER_INFO"]
    mailer = mailer or ResendMailer(app.config["RESEND_API_KEY"], app.config["MAIL_SENDER"], logger)
    renderer = renderer or HtmlPdfRenderer(
        app.config["RENDERER_URL"], app.config["RENDERER_TIMEOUT_SECONDS"], logger
    )
    blob_store = blob_store or LocalBlobStore(
        app.config["INVOICE_UPLOAD_FOLDER"], app.config["PUBLIC_BASE_URL"], logger
    )
    payment_gateway = payment_gateway or StripeGateway(
        app.config["STRIPE_SECRET_KEY"],
        app.config["STRIPE_API_BASE"],
        app.config["PAYMENT_TIMEOUT_SECONDS"],
        logger,
        currency=app.config["PAYMENT_CURRENCY"],
    )

    identity = IdentityService(
        db,
        mailer,
        logger,
        admin_email=app.config["DEFAULT_ADMIN_EMAIL"],
        otp_expiration_minutes=app.config["OTP_EXPIRATION_MINUTES"],
    )
    audit = AuditLog(db.audit_logs, logger)
    notifications = NotificationService(db, logger)
    catalog = Catalog(db.products, logger)
    dashboard = Dashboard(db, low_stock_threshold=app.config["LOW_STOCK_THRESHOLD"])
    lifecycle = OrderLifecycle(
        db,
        SequenceAllocator(db.counters, logger),
        InvoiceComposer(renderer, seller, logger),
        blob_store,
        mailer,
        notifications,
        audit,
        identity,
        logger,
        store_name=seller.get("name") or "PrimeMart",
    )
    payments = PaymentReconciler(payment_gateway, lifecycle, identity, app.config["CLIENT_URL"], logger)

    app.extensions["primemart"] = {
        "db": db,
        "identity": identity,
        "lifecycle": lifecycle,
        "payments": payments,
        "notifications": notifications,
        "catalog": catalog,
        "audit": audit,
    }

    def request_payload():
        return request.get_json(silent=True) or {}

    def transition_response(result, message: str, status_code: int = 200):
        body = {"success": True, "message": message, "order": serialize_order(result.order)}
        if result.warnings:
            body["warnings"] = result.warnings
        return jsonify(body), status_code

    # --- Auth ---

    @app.route("/api/auth/register-request-otp", methods=["POST"])
    def request_registration_otp():
        payload = request_payload()
        if not payload.get("email"):
            raise ValidationError("Email is required")
        identity.request_registration_otp(payload.get("email"))
        return jsonify({"message": "OTP sent to email successfully"})

    @app.route("/api/auth/register-verify-otp", methods=["POST"])
    def verify_registration_otp():
        payload = request_payload()
        identity.check_registration_otp(payload.get("email"), payload.get("otp"))
        return jsonify({"message": "OTP verified successfully. You can proceed."})

    @app.route("/api/auth/register", methods=["POST"])
    def register():
        user, token = identity.register(request_payload())
        return (
            jsonify(
                {
                    "message": "User registered successfully",
                    "token": token,
                    "user": identity.serialize_user(user),
                }
            ),
            201,
        )

    @app.route("/api/auth/login", methods=["POST"])
    def login():
        payload = request_payload()
        user, token = identity.login(payload.get("email"), payload.get("password"))
        return jsonify({"message": "Login successful", "token": token, "user": identity.serialize_user(user)})

    @app.route("/api/users/profile", methods=["GET", "PUT"])
    @jwt_required()
    def manage_profile():
        user = identity.current_user()
        if request.method == "PUT":
            user = identity.update_profile(user, request_payload())
            return jsonify({"message": "Profile updated successfully", "user": identity.serialize_user(user)})
        return jsonify({"user": identity.serialize_user(user)})

    # --- Orders ---

    @app.route("/api/orders", methods=["POST"])
    @jwt_required()
    def create_order():
        user = identity.current_user()
        draft = normalize_order_request(request_payload())
        result = lifecycle.create(draft, user)
        body = {
            "success": True,
            "message": "Order created successfully",
            "order": serialize_order(result.order),
            "invoiceUrl": (result.order.get("invoice") or {}).get("url", ""),
        }
        if result.warnings:
            body["warnings"] = result.warnings
        return jsonify(body), 201

    @app.route("/api/orders/my", methods=["GET"])
    @jwt_required()
    def list_my_orders():
        user = identity.current_user()
        return jsonify([serialize_order(order) for order in lifecycle.list_for_user(user)])

    @app.route("/api/orders/all", methods=["GET"])
    @jwt_required()
    def list_all_orders():
        identity.require_staff()
        status_filter = (request.args.get("status") or "").strip().lower() or None
        return jsonify([serialize_order(order) for order in lifecycle.list_all(status_filter)])

    @app.route("/api/orders/stats", methods=["GET"])
    @jwt_required()
    def order_stats():
        identity.require_staff()
        return jsonify(dashboard.order_stats())

    @app.route("/api/orders/<order_id>", methods=["GET"])
    @jwt_required()
    def get_order(order_id: str):
        user = identity.current_user()
        return jsonify(serialize_order(lifecycle.get_order(order_id, user)))

    @app.route("/api/orders/<order_id>/invoice", methods=["GET"])
    @jwt_required()
    def get_order_invoice(order_id: str):
        user = identity.current_user()
        invoice = lifecycle.ensure_invoice(order_id, user)
        return jsonify({"success": True, **invoice})

    @app.route("/api/orders/<order_id>/status", methods=["PATCH", "PUT"])
    @jwt_required()
    def update_order_status(order_id: str):
        actor = identity.require_staff()
        payload = request_payload()
        result = lifecycle.update_status(
            order_id,
            payload.get("status"),
            actor,
            rejection_reason=payload.get("rejectionReason") or payload.get("reason"),
        )
        return transition_response(result, "Order status updated")

    @app.route("/api/orders/<order_id>/approve", methods=["PATCH", "PUT"])
    @jwt_required()
    def approve_order(order_id: str):
        actor = identity.require_staff()
        result = lifecycle.approve(order_id, actor)
        return transition_response(result, "Order approved successfully")

    @app.route("/api/orders/<order_id>/reject", methods=["PATCH", "PUT"])
    @jwt_required()
    def reject_order(order_id: str):
        actor = identity.require_staff()
        payload = request_payload()
        result = lifecycle.reject(order_id, actor, payload.get("reason") or payload.get("rejectionReason"))
        return transition_response(result, "Order rejected successfully")

    @app.route("/api/orders/<order_id>", methods=["DELETE"])
    @jwt_required()
    def delete_my_order(order_id: str):
        user = identity.current_user()
        result = lifecycle.delete(order_id, user)
        body = {"success": True, "message": "Order removed from history"}
        if result.warnings:
            body["warnings"] = result.warnings
        return jsonify(body)

    @app.route("/api/orders/admin/<order_id>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_order(order_id: str):
        actor = identity.require_staff()
        result = lifecycle.delete(order_id, actor)
        body = {"message": "Order deleted", "orderNumber": result.order.get("order_number", "")}
        if result.warnings:
            body["warnings"] = result.warnings
        return jsonify(body)

    # --- Payments ---

    @app.route("/api/payments/create-checkout-session", methods=["POST"])
    @jwt_required()
    def create_checkout_session():
        user = identity.current_user()
        payload = request_payload()
        session = payments.create_checkout_session(
            payload.get("orderId"),
            user,
            items=payload.get("items"),
            total_amount=payload.get("totalAmount"),
        )
        return jsonify({"success": True, **session})

    @app.route("/api/payments/verify", methods=["GET", "POST"])
    @app.route("/api/payments/verify-payment", methods=["POST"])
    @app.route("/api/payments/stripe/verify", methods=["GET"])
    @jwt_required()
    def verify_payment():
        payload = request_payload()
        session_id = (
            request.args.get("session_id")
            or request.args.get("sessionId")
            or payload.get("sessionId")
            or payload.get("session_id")
        )
        result = payments.verify(session_id)
        return transition_response(result, "Payment verified and order finalized successfully")

    # --- Catalog ---

    @app.route("/api/products", methods=["GET"])
    def list_products():
        return jsonify(catalog.list_products())

    @app.route("/api/products/<product_id>", methods=["GET"])
    def get_product(product_id: str):
        return jsonify(serialize_product(catalog.get_product(product_id)))

    @app.route("/api/products", methods=["POST"])
    @jwt_required()
    def create_product():
        actor = identity.require_staff()
        product = catalog.create_product(request_payload())
        audit.record(actor.get("email"), "Created product", {"product": product.get("name")})
        return jsonify(serialize_product(product)), 201

    @app.route("/api/products/<product_id>", methods=["PUT"])
    @jwt_required()
    def update_product(product_id: str):
        actor = identity.require_staff()
        product = catalog.update_product(product_id, request_payload())
        audit.record(actor.get("email"), "Updated product", {"product": product.get("name")})
        return jsonify({"message": "Product updated successfully", "product": serialize_product(product)})

    @app.route("/api/products/<product_id>", methods=["DELETE"])
    @jwt_required()
    def delete_product(product_id: str):
        actor = identity.require_staff()
        product = catalog.delete_product(product_id)
        audit.record(actor.get("email"), "Deleted product", {"product": product.get("name")})
        return jsonify({"message": "Product deleted successfully"})

    # --- Admin ---

    @app.route("/api/admin/dashboard", methods=["GET"])
    @jwt_required()
    def admin_dashboard():
        identity.require_staff()
        return jsonify(dashboard.summary())

    @app.route("/api/admin/users", methods=["GET"])
    @jwt_required()
    def admin_list_users():
        identity.require_staff()
        return jsonify({"users": identity.list_users()})

    @app.route("/api/admin/users/<user_id>", methods=["GET"])
    @jwt_required()
    def admin_get_user(user_id: str):
        actor = identity.current_user()
        return jsonify({"user": identity.serialize_user(identity.get_user(user_id, actor))})

    @app.route("/api/admin/users/<user_id>", methods=["DELETE"])
    @jwt_required()
    def admin_delete_user(user_id: str):
        actor = identity.current_user()
        user = identity.delete_user(user_id, actor)
        audit.record(
            actor.get("email"),
            "Deleted user",
            {"target_email": user.get("email"), "display_name": user.get("name", "")},
        )
        return jsonify({"message": "User deleted successfully", "user": {"id": str(user["_id"])}})

    @app.route("/api/admin/orders/pending", methods=["GET"])
    @jwt_required()
    def admin_list_pending_orders():
        identity.require_staff()
        return jsonify([serialize_order(order) for order in lifecycle.list_all(PENDING)])

    @app.route("/api/admin/users/<user_id>/role", methods=["PUT"])
    @jwt_required()
    def admin_update_user_role(user_id: str):
        actor = identity.require_staff()
        user = identity.update_role(user_id, request_payload().get("role"))
        audit.record(
            actor.get("email"),
            "Updated user role",
            {"target_email": user.get("email"), "new_role": user.get("role")},
        )
        return jsonify({"message": "User role updated successfully", "user": identity.serialize_user(user)})

    @app.route("/api/admin/logs", methods=["GET"])
    @jwt_required()
    def admin_list_logs():
        identity.require_staff()
        args = request.args
        return jsonify(
            audit.search(
                args.get("search", ""),
                since=args.get("since") or args.get("from"),
                until=args.get("until") or args.get("to"),
                page=safe_positive_int(args.get("page"), 1),
                per_page=safe_positive_int(args.get("limit", 50), 1),
            )
        )

    @app.route("/api/admin/notifications", methods=["GET"])
    @jwt_required()
    def admin_list_notifications():
        identity.require_staff()
        return jsonify({"success": True, "notifications": notifications.list_latest()})

    @app.route("/api/admin/notifications/read-all", methods=["PATCH"])
    @jwt_required()
    def admin_mark_all_notifications_read():
        identity.require_staff()
        updated = notifications.mark_all_read()
        return jsonify({"success": True, "message": "All notifications marked as read.", "updated": updated})

    @app.route("/api/admin/notifications/clear-read", methods=["DELETE"])
    @jwt_required()
    def admin_clear_read_notifications():
        identity.require_staff()
        deleted = notifications.clear_read()
        return jsonify({"success": True, "message": f"{deleted} read notifications cleared.", "deleted": deleted})

    @app.route("/api/admin/notifications/<notification_id>/read", methods=["PATCH"])
    @jwt_required()
    def admin_mark_notification_read(notification_id: str):
        identity.require_staff()
        notification = notifications.mark_read(notification_id)
        return jsonify({"success": True, "notification": notification})

    # --- Files and health ---

    @app.route("/uploads/<path:filename>")
    def serve_uploaded_file(filename: str):
        return send_from_directory(app.config["INVOICE_UPLOAD_FOLDER"], filename)

    @app.route("/health")
    def health():
        return {"status": "ok"}, 200

    return app


def main():
    app = create_app()
    port = int(os.environ.get("PORT", 5000))
    app.run(host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
