"""File upload, status polling and parse webhooks."""
import mimetypes

from flask import Blueprint, Response, g, request
from flask_login import current_user, login_required

from docquiz.api.qstash_auth import verify_qstash_signature
from docquiz.api.responses import error_response, success_response
from docquiz.domain.errors import ForbiddenError, NotFoundError
from docquiz.infrastructure.qstash import decode_callback_body
from docquiz.services import get_services
from dq_utils.logger_utils import logger

files_bp = Blueprint('files', __name__)


@files_bp.route('/upload', methods=['POST'])
@login_required
def upload_file():
    """
    Upload a document and start parsing it.

    Small files (and every file in development) are parsed inline and the
    response carries the parsed content; larger files are queued and the
    client polls /<id>/status.
    """
    outcome = get_services().uploads.upload(request.files.get('file'), request.form, current_user.id)
    if not outcome.success:
        return error_response(
            422,
            outcome.error_code,
            outcome.message,
            data=outcome.to_api(),
            retryable=outcome.retryable,
        )
    return success_response(outcome.to_api(), 201)


@files_bp.route('', methods=['GET'])
@login_required
def list_files():
    files = get_services().file_service.list_files(
        current_user.id,
        status=request.args.get('status'),
        limit=request.args.get('limit', 20, type=int),
        offset=request.args.get('offset', 0, type=int),
    )
    return success_response({"files": files, "count": len(files)})


@files_bp.route('/<file_id>', methods=['GET'])
@login_required
def get_file(file_id):
    return success_response(get_services().file_service.get_file(file_id, current_user.id))


@files_bp.route('/<file_id>/status', methods=['GET'])
@login_required
def get_file_status(file_id):
    return success_response(get_services().status.get_status(file_id, current_user.id))


@files_bp.route('/<file_id>', methods=['DELETE'])
@login_required
def delete_file(file_id):
    get_services().file_service.delete_file(file_id, current_user.id)
    return success_response({"deleted": True, "fileId": file_id})


@files_bp.route('/<file_id>/reprocess', methods=['POST'])
@login_required
def reprocess_file(file_id):
    services = get_services()
    file, job = services.file_service.prepare_reprocessing(file_id, current_user.id)
    outcome = services.uploads.dispatch(file, job)
    if not outcome.success:
        return error_response(422, outcome.error_code, outcome.message,
                              data=outcome.to_api(), retryable=outcome.retryable)
    return success_response(outcome.to_api(), 202)


@files_bp.route('/download/<path:key>', methods=['GET'])
def download_file(key):
    """
    Serves raw uploads to the parser.

    Outside development the URL must carry the token minted when the parse
    request was built.
    """
    services = get_services()
    token = request.args.get('token')
    if not services.settings.is_development and not services.download_signer.verify(key, token):
        raise ForbiddenError("Invalid or expired download link")
    data = services.file_service.download(key)
    if data is None:
        raise NotFoundError("Blob", key)
    mime, _ = mimetypes.guess_type(key)
    return Response(data, mimetype=mime or "application/octet-stream")


@files_bp.route('/parse-complete', methods=['POST'])
@verify_qstash_signature
def parse_complete():
    payload = decode_callback_body(g.webhook_body)
    result = get_services().parse_results.handle_complete(payload, request.args.get('job_id'))
    logger.info("parse-complete webhook handled", extra=result)
    return success_response(result)


@files_bp.route('/parse-failed', methods=['POST'])
@verify_qstash_signature
def parse_failed():
    payload = decode_callback_body(g.webhook_body)
    result = get_services().parse_results.handle_failed(payload, request.args.get('job_id'))
    logger.info("parse-failed webhook handled", extra=result)
    return success_response(result)
