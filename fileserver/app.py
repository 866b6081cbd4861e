"""JSON HTTP adapter.

Each view translates a request into a :class:`~fileserver.service.FileServer`
call and the result (or a typed error) into JSON. No storage decision is
made here.
"""

import math
import time
import uuid
from functools import wraps
from typing import Any, Callable, Dict, Optional

from flask import Flask, Response, g, jsonify, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from itsdangerous import BadSignature, URLSafeSerializer

from .config import BYTES_PER_MB, Settings, load_secret_key, load_settings
from .errors import (
    FileServerError,
    InvalidExtensionError,
    PermissionDeniedError,
    QuotaExceededError,
    ShareWrongPasswordError,
    SizeExceededError,
    ValidationError,
)
from .logs import RequestAwareLogger, configure_logging, get_logger, sanitize_log_value
from .maintenance import start_scheduler
from .models import ROLE_ADMIN, ROLE_USER, UserAccount
from .service import DownloadRequest, FileServer, ShareCreateRequest, UploadRequest

TOKEN_SALT = "api-token"
READ_RATE_LIMIT = "300 per minute"
MULTIPART_OVERHEAD_BYTES = BYTES_PER_MB
SEARCH_FILTERS = ("extension", "mime_type", "visibility")

STATUS_BY_CODE: Dict[str, int] = {
    "invalid_request": 400,
    "path_traversal": 400,
    "invalid_extension": 415,
    "size_exceeded": 413,
    "quota_exceeded": 507,
    "io_error": 500,
    "lock_timeout": 503,
    "collection_corrupt": 500,
    "permission_denied": 403,
    "not_found": 404,
    "name_conflict": 409,
    "share_denied": 403,
    "share_not_found": 404,
    "share_inactive": 410,
    "share_expired": 410,
    "share_limit_reached": 403,
    "share_wrong_password": 401,
}

lifecycle_logger = RequestAwareLogger(get_logger("http"))


def token_serializer(secret_key: str) -> URLSafeSerializer:
    return URLSafeSerializer(secret_key, salt=TOKEN_SALT)


def issue_token(secret_key: str, user: UserAccount) -> str:
    """Return a signed bearer token identifying *user*."""

    return token_serializer(secret_key).dumps({"uid": user.id})


def _json_body() -> Dict[str, Any]:
    if not request.data:
        return {}
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")
    return payload


def _error_payload(error: FileServerError) -> Dict[str, Any]:
    payload: Dict[str, Any] = {"error": error.code, "message": str(error)}
    if error.retryable:
        payload["retryable"] = True
    if isinstance(error, InvalidExtensionError):
        payload["extension"] = error.extension
        payload["quarantined"] = error.quarantined
    elif isinstance(error, SizeExceededError):
        payload["limit"] = error.limit
    elif isinstance(error, QuotaExceededError):
        payload["current_usage"] = error.current_usage
        payload["quota_limit"] = error.quota_limit
        payload["incoming"] = error.incoming
    return payload


def create_app(
    settings: Optional[Settings] = None,
    service: Optional[FileServer] = None,
) -> Flask:
    if service is not None:
        settings = service.settings
    settings = settings or load_settings()
    configure_logging(settings.logs_dir, settings.log_level)
    service = service or FileServer(settings)
    secret_key = settings.secret_key or load_secret_key(settings.data_dir)
    serializer = token_serializer(secret_key)

    app = Flask(__name__)
    app.config["SECRET_KEY"] = secret_key
    app.config["MAX_CONTENT_LENGTH"] = settings.max_upload_bytes + MULTIPART_OVERHEAD_BYTES
    app.extensions["fileserver"] = service
    app.extensions["fileserver_scheduler"] = start_scheduler(service)

    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=[],
        storage_uri="memory://",
    )

    # -- request lifecycle ----------------------------------------------

    @app.before_request
    def add_request_id() -> None:
        g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)

    @app.before_request
    def load_caller() -> Optional[Response]:
        g.user = None
        header = request.headers.get("Authorization", "")
        if not header:
            return None
        scheme, _, token = header.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return _auth_error("Malformed Authorization header")
        try:
            claims = serializer.loads(token.strip())
        except BadSignature:
            lifecycle_logger.warning(
                "api_auth_failed endpoint=%s method=%s", request.endpoint, request.method
            )
            return _auth_error("Invalid token")
        user = service.users.find(claims.get("uid", "")) if isinstance(claims, dict) else None
        if user is None:
            return _auth_error("Invalid token")
        g.user = user
        return None

    @app.after_request
    def log_request_completion(response: Response):
        lifecycle_logger.info(
            "request_completed method=%s path=%s status=%d",
            request.method,
            sanitize_log_value(request.path),
            response.status_code,
        )
        return response

    @app.after_request
    def add_security_headers(response: Response):
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = "default-src 'none'; sandbox"
        if hasattr(g, "request_id"):
            response.headers["X-Request-ID"] = g.request_id
        return response

    # -- errors ---------------------------------------------------------

    @app.errorhandler(FileServerError)
    def handle_storage_error(error: FileServerError):
        if isinstance(error, ShareWrongPasswordError) and settings.share_collapse_errors:
            return jsonify({"error": "share_not_found", "message": "Share not found"}), 404
        status = STATUS_BY_CODE.get(error.code, 500)
        if status >= 500:
            lifecycle_logger.error("request_failed code=%s error=%s", error.code, error)
        return jsonify(_error_payload(error)), status

    @app.errorhandler(413)
    def handle_file_too_large(error):  # pragma: no cover - framework hook
        return (
            jsonify({"error": "size_exceeded", "limit": settings.max_upload_bytes}),
            413,
        )

    @app.errorhandler(429)
    def handle_rate_limit(error):  # pragma: no cover - framework hook
        description = getattr(error, "description", "Too many requests")
        return jsonify({"error": "rate_limited", "message": str(description)}), 429

    # -- decorators -----------------------------------------------------

    def require_user(view: Callable):
        @wraps(view)
        def wrapped(*args, **kwargs):
            if g.user is None:
                return _auth_error("Authentication required")
            if not g.user.is_active:
                raise PermissionDeniedError("Account is suspended")
            return view(*args, **kwargs)

        return wrapped

    def rate_limited(action: str):
        def decorator(view: Callable):
            @wraps(view)
            def wrapped(*args, **kwargs):
                subject = g.user.id if g.user is not None else (get_remote_address() or "anonymous")
                decision = service.check_rate(subject, action)
                if not decision.allowed:
                    retry_after = max(1, math.ceil(decision.retry_after or 0))
                    response = jsonify(
                        {
                            "error": "rate_limited",
                            "message": "Too many requests",
                            "retry_after": retry_after,
                        }
                    )
                    response.status_code = 429
                    response.headers["Retry-After"] = str(retry_after)
                    return response
                return view(*args, **kwargs)

            return wrapped

        return decorator

    def current_actor():
        return service.actor_for(g.user.id) if g.user is not None else None

    def _send(download):
        record, path = download
        return send_file(
            path,
            mimetype=record.mime_type,
            as_attachment=True,
            download_name=record.original_name or record.stored_filename,
        )

    # -- routes ---------------------------------------------------------

    @app.route("/health")
    def health_check():
        healthy, checks = service.health()
        status = "healthy" if healthy else "unhealthy"
        return (
            jsonify({"status": status, "timestamp": time.time(), "checks": checks}),
            200 if healthy else 503,
        )

    @app.route("/users", methods=["POST"])
    @require_user
    @rate_limited("mutation")
    def create_user():
        if not g.user.is_admin:
            raise PermissionDeniedError("Only administrators may create users")
        payload = _json_body()
        quota_bytes = None
        if payload.get("quota_mb") is not None:
            try:
                quota_bytes = int(float(payload["quota_mb"]) * BYTES_PER_MB)
            except (TypeError, ValueError) as error:
                raise ValidationError("quota_mb must be a number") from error
        user = service.users.create_user(
            str(payload.get("username", "")),
            role=ROLE_ADMIN if payload.get("role") == ROLE_ADMIN else ROLE_USER,
            quota_bytes=quota_bytes,
        )
        return jsonify({"user": user.to_dict(), "token": issue_token(secret_key, user)}), 201

    @app.route("/users")
    @limiter.limit(READ_RATE_LIMIT)
    @require_user
    def list_users():
        if not g.user.is_admin:
            raise PermissionDeniedError("Only administrators may list users")
        return jsonify({"users": [user.to_dict() for user in service.users.list_users()]})

    @app.route("/usage")
    @limiter.limit(READ_RATE_LIMIT)
    @require_user
    def usage():
        user, report = service.usage(g.user.id)
        return jsonify(
            {
                "user_id": user.id,
                "used_bytes": report.used_bytes,
                "quota_bytes": user.quota_bytes,
                "file_count": report.file_count,
                "flagged_ids": report.missing_ids,
            }
        )

    @app.route("/files", methods=["POST"])
    @require_user
    @rate_limited("upload")
    def upload_file():
        uploaded = request.files.get("file")
        if uploaded is None or not uploaded.filename:
            raise ValidationError("A 'file' part is required")
        record = service.upload(
            UploadRequest(
                owner_id=request.form.get("owner_id") or g.user.id,
                requester_id=g.user.id,
                directory_class=request.form.get("directory_class", "private"),
                filename=uploaded.filename,
                data=uploaded.stream,
                logical_dir=request.form.get("directory", ""),
            )
        )
        return jsonify(record.to_dict()), 201

    @app.route("/files")
    @limiter.limit(READ_RATE_LIMIT)
    @require_user
    def list_files():
        criteria = {key: request.args.get(key) for key in SEARCH_FILTERS}
        if request.args.get("q") or any(criteria.values()):
            records = service.files.search(
                current_actor(),
                request.args.get("q", ""),
                owner_id=request.args.get("owner_id"),
                directory_class=request.args.get("directory_class"),
                **criteria,
            )
            return jsonify({"files": [record.to_dict() for record in records]})

        owner_id = request.args.get("owner_id") or g.user.id
        if owner_id != g.user.id and not g.user.is_admin:
            raise PermissionDeniedError("Only administrators may list other users' files")
        records = service.files.list_for_owner(owner_id, request.args.get("directory_class"))
        return jsonify({"files": [record.to_dict() for record in records]})

    @app.route("/files/<file_id>")
    @limiter.limit(READ_RATE_LIMIT)
    def file_metadata(file_id: str):
        record = service.files.get(file_id)
        service.access.require_read(current_actor(), record)
        return jsonify(record.to_dict())

    @app.route("/files/<file_id>/checksum")
    @limiter.limit(READ_RATE_LIMIT)
    def verify_checksum(file_id: str):
        return jsonify(service.files.verify_checksum(current_actor(), file_id))

    @app.route("/files/<file_id>/content")
    @limiter.limit(READ_RATE_LIMIT)
    def download_file(file_id: str):
        download = service.download(
            DownloadRequest(requester_id=g.user.id if g.user else None, file_id=file_id)
        )
        lifecycle_logger.info("file_downloaded file_id=%s", file_id)
        return _send(download)

    @app.route("/files/<file_id>", methods=["PATCH"])
    @require_user
    @rate_limited("mutation")
    def update_file(file_id: str):
        payload = _json_body()
        actor = current_actor()
        record = service.files.get(file_id)
        if "name" in payload:
            record = service.files.rename(actor, file_id, str(payload["name"]))
        if "directory" in payload or "directory_class" in payload:
            record = service.files.move(
                actor,
                file_id,
                logical_dir=payload.get("directory"),
                directory_class=payload.get("directory_class"),
            )
        if "visibility" in payload or "importance" in payload:
            record = service.files.update_metadata(
                actor,
                file_id,
                visibility=payload.get("visibility"),
                importance=payload.get("importance"),
            )
        return jsonify(record.to_dict())

    @app.route("/files/<file_id>", methods=["DELETE"])
    @require_user
    @rate_limited("mutation")
    def delete_file(file_id: str):
        record = service.files.delete(current_actor(), file_id)
        return jsonify({"deleted": record.id})

    @app.route("/files/<file_id>/shares", methods=["POST"])
    @require_user
    @rate_limited("share_create")
    def create_share(file_id: str):
        payload = _json_body()
        share = service.create_share(
            ShareCreateRequest(
                owner_id=g.user.id,
                file_id=file_id,
                password=payload.get("password") or None,
                expires_at=payload.get("expires_at"),
                download_limit=payload.get("download_limit"),
            )
        )
        return jsonify(share.public_dict()), 201

    @app.route("/shares")
    @limiter.limit(READ_RATE_LIMIT)
    @require_user
    def list_shares():
        shares = service.shares.list_shares(current_actor(), request.args.get("file_id"))
        return jsonify({"shares": [share.public_dict() for share in shares]})

    @app.route("/shares/<share_id>", methods=["PATCH"])
    @require_user
    @rate_limited("mutation")
    def update_share(share_id: str):
        payload = _json_body()
        changes = {
            key: payload[key]
            for key in ("password", "expires_at", "download_limit")
            if key in payload
        }
        share = service.shares.update_share(current_actor(), share_id, **changes)
        return jsonify(share.public_dict())

    @app.route("/shares/<share_id>/<action>", methods=["POST"])
    @require_user
    @rate_limited("mutation")
    def mutate_share(share_id: str, action: str):
        operations = {
            "deactivate": service.shares.deactivate,
            "reactivate": service.shares.reactivate,
            "reset": service.shares.reset_count,
        }
        operation = operations.get(action)
        if operation is None:
            return jsonify({"error": "not_found", "message": "Unknown share action"}), 404
        share = operation(current_actor(), share_id)
        return jsonify(share.public_dict())

    @app.route("/shares/<share_id>", methods=["DELETE"])
    @require_user
    @rate_limited("mutation")
    def delete_share(share_id: str):
        share = service.shares.delete_share(current_actor(), share_id)
        return jsonify({"deleted": share.id})

    @app.route("/s/<token>")
    @rate_limited("share_access")
    def access_share(token: str):
        password = request.headers.get("X-Share-Password") or request.args.get("password")
        download = service.download(DownloadRequest(share_token=token, share_password=password))
        return _send(download)

    return app


def _auth_error(message: str):
    response = jsonify({"error": "unauthorized", "message": message})
    response.status_code = 401
    response.headers["WWW-Authenticate"] = "Bearer"
    return response
