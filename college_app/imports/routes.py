import json

from flask import Blueprint, render_template, request, current_app, Response, abort
from flask_login import login_required, current_user
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from werkzeug.utils import secure_filename

from .. import db, csrf_required, limiter
from ..api_utils import api_success, api_error
from ..decorators import role_required
from ..errors import StructuralImportError
from ..models import ImportLog, User
from ..services import department_reference, persist_for
from .reconcile import report_text, run_import
from .records import LAYOUTS, normalize_record_type, template_csv

imports_bp = Blueprint("imports", __name__)

ALLOWED_IMPORT_EXTS = {"csv", "txt"}


def _write_log(kind, filename, dry_run, outcome=None, fatal_error=None):
    lg = ImportLog(
        user_id_fk=getattr(current_user, "user_id", None),
        kind=kind,
        filename=filename,
        dry_run=dry_run,
        total_count=outcome.processed_count if outcome else 0,
        created_count=outcome.success_count if outcome else 0,
        errors_count=outcome.error_count if outcome else 0,
        fatal_error=fatal_error[:255] if fatal_error else None,
        extra_json=json.dumps({"errors": outcome.messages()}) if outcome else None,
    )
    try:
        db.session.add(lg)
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        current_app.logger.exception("Failed to write import log for %s", filename)
        return None
    return lg


def _run_upload(kind, upload, dry_run):
    """Run one upload. Returns (outcome, fatal_error_message)."""
    filename = secure_filename(upload.filename or "") or "upload.csv"
    current_app.logger.info(
        f"AUDIT import_start user={getattr(current_user, 'username', None)} kind={kind} file={filename} dry_run={dry_run}"
    )
    try:
        reference = department_reference()
        outcome = run_import(
            upload.read(),
            kind,
            reference,
            persist_for(kind, acting_user=current_user),
            dry_run=dry_run,
            max_rows=current_app.config.get("IMPORT_MAX_ROWS"),
        )
    except StructuralImportError as e:
        current_app.logger.warning(f"Import of {filename} aborted: {e}")
        _write_log(kind, filename, dry_run, fatal_error=str(e))
        return None, str(e)
    current_app.logger.info(
        f"AUDIT import_done user={getattr(current_user, 'username', None)} kind={kind} file={filename} "
        f"ok={outcome.success_count} errors={outcome.error_count}"
    )
    lg = _write_log(kind, filename, dry_run, outcome=outcome)
    outcome.log_id = lg.log_id if lg else None
    return outcome, None


def _check_upload(upload_type, upload):
    errors = []
    kind = None
    try:
        kind = normalize_record_type(upload_type)
    except ValueError:
        errors.append("Please select what to upload (students or teachers).")
    if not upload or not upload.filename:
        errors.append("Please choose a CSV file.")
    else:
        filename = secure_filename(upload.filename or "")
        ext = (filename.rsplit(".", 1)[-1] or "").lower() if "." in filename else ""
        if ext not in ALLOWED_IMPORT_EXTS:
            errors.append("File must be a CSV (.csv).")
    return kind, errors


@imports_bp.route("/admin/bulk-upload", methods=["GET", "POST"])
@login_required
@role_required("admin")
@limiter.limit("10 per minute", methods=["POST"])
@csrf_required
def bulk_upload():
    layouts = list(LAYOUTS.values())
    if request.method == "POST":
        upload_type = (request.form.get("upload_type") or "").strip()
        upload = request.files.get("file")
        dry_run_flag = ((request.form.get("dry_run") or "").strip().lower() in {"1", "true", "on"})
        form = {"upload_type": upload_type, "dry_run": dry_run_flag}
        kind, errors = _check_upload(upload_type, upload)
        if errors:
            return render_template("bulk_upload.html", layouts=layouts, errors=errors, form=form)
        outcome, fatal = _run_upload(kind, upload, dry_run_flag)
        if fatal:
            return render_template("bulk_upload.html", layouts=layouts, errors=[f"Upload failed: {fatal}"], form=form)
        return render_template("import_result.html", report=outcome.to_report(), log_id=outcome.log_id)
    return render_template("bulk_upload.html", layouts=layouts, form={})


@imports_bp.route("/admin/bulk-upload/template/<record_type>", methods=["GET"])
@login_required
@role_required("admin")
def bulk_upload_template(record_type):
    try:
        kind = normalize_record_type(record_type)
    except ValueError:
        abort(404)
    data = template_csv(kind).encode("utf-8")
    return Response(
        data,
        headers={
            "Content-Type": "text/csv",
            "Content-Disposition": f"attachment; filename={kind}_template.csv",
        },
    )


@imports_bp.route("/api/imports/<record_type>", methods=["POST"])
@login_required
@role_required("admin")
@limiter.limit("10 per minute")
@csrf_required
def api_bulk_upload(record_type):
    upload = request.files.get("file")
    dry_run_flag = ((request.form.get("dry_run") or request.args.get("dry_run") or "").strip().lower() in {"1", "true", "on"})
    kind, errors = _check_upload(record_type, upload)
    if errors:
        return api_error("invalid_upload", " ".join(errors), 400, details=errors)
    outcome, fatal = _run_upload(kind, upload, dry_run_flag)
    if fatal:
        return api_error("structural_error", fatal, 400)
    return api_success(outcome.to_report(), meta={"log_id": outcome.log_id})


@imports_bp.route("/admin/import-logs")
@login_required
@role_required("admin")
def import_logs():
    kind = (request.args.get("kind") or "").strip().lower()
    q = select(ImportLog).order_by(ImportLog.created_at.desc(), ImportLog.log_id.desc())
    if kind in LAYOUTS:
        q = q.filter(ImportLog.kind == kind)
    rows = db.session.execute(q.limit(200)).scalars().all()
    users = {u.user_id: u for u in db.session.execute(select(User).filter(User.role == "admin")).scalars().all()}
    return render_template("import_logs.html", rows=rows, users=users, filters={"kind": kind})


@imports_bp.route("/admin/import-logs/<int:log_id>/errors.txt")
@login_required
@role_required("admin")
def import_log_errors(log_id):
    lg = db.session.get(ImportLog, log_id)
    if not lg:
        abort(404)
    errors = []
    if lg.extra_json:
        try:
            errors = json.loads(lg.extra_json).get("errors") or []
        except ValueError:
            current_app.logger.warning(f"Import log {log_id} has unreadable extra_json")
    if lg.fatal_error:
        text = f"Upload failed: {lg.fatal_error}\n"
    else:
        text = report_text(lg.created_count or 0, errors, dry_run=bool(lg.dry_run))
    data = text.encode("utf-8")
    return Response(
        data,
        headers={
            "Content-Type": "text/plain; charset=utf-8",
            "Content-Disposition": f"attachment; filename=import_{log_id}_errors.txt",
        },
    )
