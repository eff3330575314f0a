from typing import Any, Dict, List

from pydantic import ValidationError
from pydantic.alias_generators import to_camel

from docquiz.domain.errors import BadRequestError, ForbiddenError, NotFoundError
from docquiz.domain.models.api_models import QuizMetadataUpdate
from docquiz.domain.models.db_models import Question, Quiz, QuizConfig, QuizStatus
from docquiz.domain.repositories import IFileRepository, IQuizIndexRepository, IQuizRepository
from docquiz.services.file_service import get_owned_file
from dq_utils.logger_utils import logger


def _validation_message(error: ValidationError) -> str:
    first = error.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"{location}: {first['msg']}" if location else first["msg"]


class QuizService:
    """Reads and edits stored quizzes. Every operation checks quiz ownership."""

    def __init__(self, quizzes: IQuizRepository, quiz_index: IQuizIndexRepository, files: IFileRepository):
        self.quizzes = quizzes
        self.quiz_index = quiz_index
        self.files = files

    def get_quiz(self, quiz_id: str, user_id: str) -> Quiz:
        quiz = self.quizzes.get_by_id(quiz_id)
        if quiz is None:
            raise NotFoundError("Quiz", quiz_id)
        if quiz.user_id != user_id:
            raise ForbiddenError("You do not have access to this quiz")
        return quiz

    def list_for_user(self, user_id: str) -> List[Quiz]:
        return self.quizzes.list_for_user(user_id)

    def list_for_file(self, file_id: str, user_id: str) -> List[Quiz]:
        get_owned_file(self.files, file_id, user_id)
        return self.quizzes.list_for_file(file_id)

    def update_metadata(self, quiz_id: str, user_id: str, payload: Dict[str, Any]) -> Quiz:
        quiz = self.get_quiz(quiz_id, user_id)
        try:
            update = QuizMetadataUpdate.model_validate(payload)
            status = QuizStatus(update.status) if update.status is not None else None
            config = QuizConfig.model_validate(update.config) if update.config is not None else None
        except ValidationError as e:
            raise BadRequestError(_validation_message(e)) from e
        except ValueError as e:
            raise BadRequestError(f"Invalid status '{update.status}'") from e

        fields: Dict[str, Any] = {}
        if update.title is not None:
            fields["title"] = update.title
        if update.topic is not None:
            fields["topic"] = update.topic
        if status is not None:
            fields["status"] = status.value
        if config is not None:
            fields["config"] = config.model_dump()
        if not fields:
            raise BadRequestError("Nothing to update")

        self.quizzes.update(quiz.id, fields)
        index_fields = {k: v for k, v in fields.items() if k in ("topic", "status")}
        if index_fields:
            self.quiz_index.update(quiz.id, index_fields)
        logger.info("Quiz metadata updated", extra={"quiz_id": quiz.id, "fields": sorted(fields)})
        return self.get_quiz(quiz.id, user_id)

    def update_question(self, quiz_id: str, user_id: str, index: int, payload: Dict[str, Any]) -> Quiz:
        quiz = self.get_quiz(quiz_id, user_id)
        self._check_index(quiz, index)
        current = quiz.questions[index]
        merged = current.model_dump(by_alias=True)
        merged.update({to_camel(key): value for key, value in (payload or {}).items()})
        merged["id"] = current.id
        questions = list(quiz.questions)
        questions[index] = self._question(merged)
        return self._save_questions(quiz, questions, user_id)

    def add_question(self, quiz_id: str, user_id: str, payload: Dict[str, Any]) -> tuple:
        quiz = self.get_quiz(quiz_id, user_id)
        question = self._question(payload or {})
        questions = list(quiz.questions) + [question]
        return self._save_questions(quiz, questions, user_id), question.id

    def delete_question(self, quiz_id: str, user_id: str, index: int) -> Quiz:
        quiz = self.get_quiz(quiz_id, user_id)
        self._check_index(quiz, index)
        questions = [q for i, q in enumerate(quiz.questions) if i != index]
        return self._save_questions(quiz, questions, user_id)

    def reorder_questions(self, quiz_id: str, user_id: str, new_order: Any) -> Quiz:
        """Apply a permutation; nothing is written unless it covers every question exactly once."""
        quiz = self.get_quiz(quiz_id, user_id)
        count = len(quiz.questions)
        if not isinstance(new_order, list) or any(isinstance(i, bool) or not isinstance(i, int) for i in new_order):
            raise BadRequestError("newOrder must be a list of question indexes")
        if len(new_order) != count:
            raise BadRequestError(f"newOrder must contain exactly {count} indexes")
        if any(i < 0 or i >= count for i in new_order):
            raise BadRequestError(f"newOrder indexes must be between 0 and {count - 1}")
        if len(set(new_order)) != count:
            raise BadRequestError("newOrder must not repeat indexes")

        questions = [quiz.questions[i] for i in new_order]
        return self._save_questions(quiz, questions, user_id)

    @staticmethod
    def _check_index(quiz: Quiz, index: int) -> None:
        if index < 0 or index >= len(quiz.questions):
            raise BadRequestError(f"Question index {index} is out of range")

    @staticmethod
    def _question(payload: Dict[str, Any]) -> Question:
        try:
            return Question.model_validate(payload)
        except ValidationError as e:
            raise BadRequestError(_validation_message(e)) from e

    def _save_questions(self, quiz: Quiz, questions: List[Question], user_id: str) -> Quiz:
        self.quizzes.update(quiz.id, {"questions": [q.model_dump() for q in questions]})
        logger.info("Quiz questions updated", extra={"quiz_id": quiz.id, "count": len(questions)})
        return self.get_quiz(quiz.id, user_id)
