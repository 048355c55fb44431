import logging
from io import BytesIO

from flask import Flask, request, jsonify, send_file
from flask_cors import CORS

from certguard import audit, watermark
from certguard.blacklist import Blacklist
from certguard.blockchain import Ledger
from certguard.config import load_settings
from certguard.crypto_utils import decrypt, encrypt, get_cipher, sha256_hash, verify_secret
from certguard.database import db, Issuer
from certguard.errors import (
    CertGuardError,
    MalformedInputError,
    NotFoundError,
    UnauthorizedIssuerError,
)
from certguard.issuance import IssuanceService, certificate_pdf, preview
from certguard.qr import QrPayload, decode_data_uri, encode_data_uri, qr_png
from certguard.verification import (
    VerificationEngine,
    forgery_alerts,
    recent_activity,
    verification_stats,
)

logger = logging.getLogger(__name__)


def _body() -> dict:
    data = request.get_json(silent=True)
    if isinstance(data, dict):
        return data
    return request.form.to_dict()


def _uploaded(data: dict, file_field: str, uri_field: str):
    upload = request.files.get(file_field)
    if upload is not None:
        return upload.read()
    uri = data.get(uri_field)
    if uri:
        return decode_data_uri(uri)
    return None


def create_app(overrides=None) -> Flask:
    settings = load_settings(overrides)
    logging.basicConfig(
        level=settings["LOG_LEVEL"],
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # ---------------- FLASK SETUP ----------------
    app = Flask(__name__)
    app.config.update(settings)
    CORS(app)
    db.init_app(app)

    cipher = get_cipher(settings["MASTER_KEY"].encode())
    ledger = Ledger(append_retries=settings["APPEND_RETRIES"])
    blacklist = Blacklist()
    engine = VerificationEngine(ledger, blacklist)
    issuance = IssuanceService(ledger, strict_capacity=settings["STRICT_WATERMARK_CAPACITY"])
    app.extensions["certguard"] = {
        "ledger": ledger,
        "blacklist": blacklist,
        "engine": engine,
        "issuance": issuance,
        "cipher": cipher,
    }

    # ---------------- ISSUER INIT ----------------
    def ensure_issuer_exists():
        issuer = db.session.scalars(db.select(Issuer).limit(1)).first()
        if not issuer:
            issuer = Issuer(
                encrypted_name=encrypt(settings["ISSUER_NAME"], cipher),
                secret_hash=sha256_hash(settings["ISSUER_SECRET"]),
            )
            db.session.add(issuer)
            db.session.commit()
        return issuer

    with app.app_context():
        db.create_all()
        ensure_issuer_exists()
        ledger.ensure_genesis()

    def require_issuer(data: dict) -> Issuer:
        key = request.headers.get("X-Issuer-Key") or data.get("issuer_key") or ""
        issuer = ensure_issuer_exists()
        if not verify_secret(key.strip(), issuer.secret_hash):
            logger.warning("Rejected request with an invalid issuer key")
            raise UnauthorizedIssuerError("Unauthorized Issuer")
        return issuer

    def get_record(cert_id):
        record = ledger.get_by_id(cert_id)
        if record is None:
            raise NotFoundError(f"Certificate {cert_id} not found")
        return record

    # ---------------- ERRORS ----------------
    @app.errorhandler(CertGuardError)
    def handle_error(error):
        return jsonify({"error": str(error), "kind": error.kind}), error.status_code

    # ---------------- ISSUE ----------------
    @app.route("/preview", methods=["POST"])
    def preview_signature():
        return jsonify(preview(_body()))

    @app.route("/certificates", methods=["POST"])
    def issue():
        data = _body()
        require_issuer(data)
        fields = {key: value for key, value in data.items() if key != "issuer_key"}
        base_image = _uploaded(data, "image", "image_data_uri")

        issued = issuance.issue(fields, base_image=base_image)
        audit.record_event(f"issued {issued.record.cert_id} ({issued.record.hash})", cipher)

        response = issued.to_dict()
        response["qrDataUri"] = encode_data_uri(issued.qr.to_json().encode("utf-8"))
        response["imageDataUri"] = encode_data_uri(issued.image_png, "image/png")
        return jsonify(response), 201

    # ---------------- CERTIFICATE VIEW ----------------
    @app.route("/certificates/<cert_id>")
    def certificate_view(cert_id):
        return jsonify(get_record(cert_id).to_dict())

    @app.route("/certificates/<cert_id>/image")
    def certificate_image(cert_id):
        record = get_record(cert_id)
        png = issuance.render(record)
        return send_file(BytesIO(png), mimetype="image/png")

    # ---------------- QR ----------------
    @app.route("/qr/<cert_id>")
    def qr_code(cert_id):
        record = get_record(cert_id)
        png = qr_png(QrPayload(record.cert_id, record.hash))
        return send_file(BytesIO(png), mimetype="image/png")

    # ---------------- PDF ----------------
    @app.route("/download/<cert_id>")
    def download_certificate(cert_id):
        record = get_record(cert_id)
        issuer = ensure_issuer_exists()
        pdf = certificate_pdf(record, decrypt(issuer.encrypted_name, cipher))
        return send_file(
            BytesIO(pdf),
            as_attachment=True,
            download_name=f"{record.cert_id}.pdf",
            mimetype="application/pdf",
        )

    # ---------------- VERIFY ----------------
    @app.route("/verify", methods=["POST"])
    def verify():
        data = _body()
        qr_payload = data.get("qr_payload") or data.get("qrDataUri")
        try:
            document = _uploaded(data, "document", "document_data_uri")
        except MalformedInputError:
            # an unreadable document is one without a watermark
            document = b""
        result = engine.verify(qr_payload, document=document)
        return jsonify(result.to_dict())

    # ---------------- WATERMARK ----------------
    @app.route("/watermark/embed", methods=["POST"])
    def embed_watermark():
        data = _body()
        image = _uploaded(data, "image", "image_data_uri")
        text = data.get("watermark_text")
        if image is None or not text:
            raise MalformedInputError("Both an image and watermark_text are required")
        png = watermark.embed_png(image, text, strict=settings["STRICT_WATERMARK_CAPACITY"])
        return jsonify({"watermarkedImageDataUri": encode_data_uri(png, "image/png")})

    @app.route("/watermark/extract", methods=["POST"])
    def extract_watermark():
        data = _body()
        image = _uploaded(data, "image", "image_data_uri")
        if image is None:
            raise MalformedInputError("An image is required")
        return jsonify({"extractedWatermarkText": watermark.extract_png(image)})

    # ---------------- CHAIN ADMIN ----------------
    @app.route("/chain/verify")
    def verify_chain():
        return jsonify(ledger.verify_integrity().to_dict())

    @app.route("/chain/tamper", methods=["POST"])
    def tamper_chain():
        require_issuer(_body())
        result = ledger.tamper_random()
        audit.record_event(result.message, cipher)
        return jsonify({"message": result.message, "certificateId": result.certificate_id})

    @app.route("/chain/reset", methods=["POST"])
    def reset_chain():
        require_issuer(_body())
        message = ledger.reset()
        audit.record_event(message, cipher)
        return jsonify({"message": message})

    @app.route("/audit")
    def audit_log():
        require_issuer(_body())
        return jsonify(audit.read_events(cipher))

    # ---------------- BLACKLIST ----------------
    @app.route("/blacklist", methods=["GET", "POST"])
    def blacklist_entities():
        if request.method == "GET":
            return jsonify([entry.to_dict() for entry in blacklist.entries()])

        data = _body()
        require_issuer(data)
        entry = blacklist.add(
            data.get("entity_id", ""),
            data.get("reason") or "Blacklisted by admin",
        )
        audit.record_event(f"blacklisted {entry.entity_id}: {entry.reason}", cipher)
        return jsonify(entry.to_dict()), 201

    @app.route("/blacklist/<entity_id>/revoke", methods=["POST"])
    def revoke_blacklist(entity_id):
        require_issuer(_body())
        entry = blacklist.revoke(entity_id)
        audit.record_event(f"reinstated {entry.entity_id}", cipher)
        return jsonify(entry.to_dict())

    # ---------------- DASHBOARD ----------------
    @app.route("/alerts")
    def alerts():
        limit = request.args.get("limit", 5, type=int)
        return jsonify([entry.to_dict() for entry in forgery_alerts(limit)])

    @app.route("/activity")
    def activity():
        limit = request.args.get("limit", 10, type=int)
        return jsonify([entry.to_dict() for entry in recent_activity(limit)])

    @app.route("/stats")
    def stats():
        return jsonify(verification_stats())

    return app


if __name__ == "__main__":
    create_app().run(port=8080, debug=False)
