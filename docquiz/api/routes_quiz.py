"""Quiz generation requests, the processing webhook and quiz editing."""
from flask import Blueprint, g, request
from flask_login import current_user, login_required
from pydantic import ValidationError

from docquiz.api.qstash_auth import verify_qstash_signature
from docquiz.api.responses import success_response
from docquiz.domain.errors import BadRequestError
from docquiz.domain.models.api_models import GenerateQuizRequest, ProcessGenerationRequest, ReorderRequest
from docquiz.infrastructure.qstash import decode_callback_body
from docquiz.services import get_services

quiz_bp = Blueprint('quiz', __name__)


def _json_body() -> dict:
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise BadRequestError("Request body must be a JSON object")
    return data


def _parse(model, data):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        missing = [".".join(str(p) for p in err["loc"]) for err in e.errors() if err["type"] == "missing"]
        if missing:
            raise BadRequestError(f"Missing required field: {', '.join(missing)}") from e
        raise BadRequestError(e.errors()[0]["msg"]) from e


@quiz_bp.route('/generate', methods=['POST'])
@login_required
def generate_quiz():
    payload = _parse(GenerateQuizRequest, _json_body())
    result = get_services().generation.request_generation(payload, current_user.id)
    return success_response(result, 202)


@quiz_bp.route('/process', methods=['POST'])
@verify_qstash_signature
def process_quiz():
    payload = _parse(ProcessGenerationRequest, decode_callback_body(g.webhook_body))
    return success_response(get_services().generation.process(payload))


@quiz_bp.route('/status/<job_id>', methods=['GET'])
@login_required
def generation_status(job_id):
    return success_response(get_services().status.get_generation_status(job_id, current_user.id))


@quiz_bp.route('/user', methods=['GET'])
@login_required
def list_my_quizzes():
    quizzes = get_services().quiz_editor.list_for_user(current_user.id)
    return success_response({"quizzes": [quiz.to_api() for quiz in quizzes]})


@quiz_bp.route('/file/<file_id>', methods=['GET'])
@login_required
def list_file_quizzes(file_id):
    quizzes = get_services().quiz_editor.list_for_file(file_id, current_user.id)
    return success_response({"quizzes": [quiz.to_api() for quiz in quizzes]})


@quiz_bp.route('/<quiz_id>', methods=['GET'])
@login_required
def get_quiz(quiz_id):
    return success_response(get_services().quiz_editor.get_quiz(quiz_id, current_user.id).to_api())


@quiz_bp.route('/<quiz_id>', methods=['PATCH'])
@login_required
def update_quiz(quiz_id):
    quiz = get_services().quiz_editor.update_metadata(quiz_id, current_user.id, _json_body())
    return success_response(quiz.to_api())


@quiz_bp.route('/<quiz_id>/questions/reorder', methods=['PUT'])
@login_required
def reorder_questions(quiz_id):
    payload = _parse(ReorderRequest, _json_body())
    quiz = get_services().quiz_editor.reorder_questions(quiz_id, current_user.id, payload.new_order)
    return success_response(quiz.to_api())


@quiz_bp.route('/<quiz_id>/questions', methods=['POST'])
@login_required
def add_question(quiz_id):
    quiz, question_id = get_services().quiz_editor.add_question(quiz_id, current_user.id, _json_body())
    return success_response({"quiz": quiz.to_api(), "questionId": question_id}, 201)


@quiz_bp.route('/<quiz_id>/questions/<int:index>', methods=['PATCH'])
@login_required
def update_question(quiz_id, index):
    quiz = get_services().quiz_editor.update_question(quiz_id, current_user.id, index, _json_body())
    return success_response(quiz.to_api())


@quiz_bp.route('/<quiz_id>/questions/<int:index>', methods=['DELETE'])
@login_required
def delete_question(quiz_id, index):
    quiz = get_services().quiz_editor.delete_question(quiz_id, current_user.id, index)
    return success_response(quiz.to_api())
