"""
Question Queue - durable mailbox of questions raised by a workflow run.

One JSON document per project at .specify/questions.json:

    {"workflowId": "<execution id>", "questions": [Question, ...]}

State machine per question: PENDING -> ANSWERED. An answered question
cannot be answered again.

The queue is a convenience cache, not the source of truth for the
orchestration: a missing or corrupt file reads as an empty queue.

Usage:
    store = QuestionQueueStore(project_path)
    store.add("wf-1", QuestionQueuedData(id="fw", content="Framework?"))
    store.pending()            # [Question(id="fw", ...)]
    store.answer("fw", "React")
"""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Optional, Union

from filelock import FileLock
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from .checkpoint import atomic_write_text
from .errors import QuestionAlreadyAnsweredError
from .events import QuestionOption, QuestionQueuedData, utc_now_iso
from .paths import ProjectPaths

logger = logging.getLogger(__name__)


class QuestionStatus(str, Enum):
    PENDING = "pending"
    ANSWERED = "answered"


class Question(BaseModel):
    """One unit of required human input."""
    model_config = ConfigDict(populate_by_name=True)

    id: str
    content: str
    header: Optional[str] = None
    options: list[QuestionOption] = Field(default_factory=list)
    multi_select: bool = Field(False, alias="multiSelect")
    status: QuestionStatus = QuestionStatus.PENDING
    created_at: str = Field(default_factory=utc_now_iso, alias="createdAt")
    answered_at: Optional[str] = Field(None, alias="answeredAt")
    answer: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status == QuestionStatus.PENDING

    @classmethod
    def from_event_data(cls, data: QuestionQueuedData) -> "Question":
        return cls(
            id=data.id,
            content=data.content,
            header=data.header,
            options=list(data.options),
            multi_select=data.multi_select,
        )


class QuestionQueue(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    workflow_id: str = Field("", alias="workflowId")
    questions: list[Question] = Field(default_factory=list)

    def find(self, question_id: str) -> Optional[Question]:
        for question in self.questions:
            if question.id == question_id:
                return question
        return None


class QuestionQueueStore:
    """File-backed question queue for one project."""

    def __init__(self, project_path: Path):
        self.paths = ProjectPaths(project_path)
        self.queue_path = self.paths.question_queue_file()
        self._lock = FileLock(str(self.queue_path) + ".lock")

    def _ensure_dir(self) -> None:
        self.queue_path.parent.mkdir(parents=True, exist_ok=True)

    def _load(self) -> QuestionQueue:
        if not self.queue_path.exists():
            return QuestionQueue()
        try:
            return QuestionQueue.model_validate(json.loads(self.queue_path.read_text()))
        except (json.JSONDecodeError, PydanticValidationError, OSError) as e:
            logger.warning(f"Question queue at {self.queue_path} unreadable, treating as empty: {e}")
            return QuestionQueue()

    def _save(self, queue: QuestionQueue) -> None:
        content = json.dumps(queue.model_dump(mode="json", by_alias=True, exclude_none=True), indent=2)
        atomic_write_text(self.queue_path, content)

    def read(self) -> QuestionQueue:
        """Read the queue; missing or corrupt files give an empty queue."""
        return self._load()

    def write(self, queue: QuestionQueue) -> None:
        self._ensure_dir()
        with self._lock:
            self._save(queue)

    def add(
        self,
        workflow_id: str,
        question: Union[QuestionQueuedData, dict],
    ) -> Question:
        """
        Append a pending question and make workflow_id the queue owner.

        A question re-raised with an id already in the queue replaces the
        earlier entry in place.
        """
        if isinstance(question, dict):
            question = QuestionQueuedData.model_validate(question)
        full = Question.from_event_data(question)

        self._ensure_dir()
        with self._lock:
            queue = self._load()
            queue.workflow_id = workflow_id
            for i, existing in enumerate(queue.questions):
                if existing.id == full.id:
                    queue.questions[i] = full
                    break
            else:
                queue.questions.append(full)
            self._save(queue)

        logger.debug(f"Queued question {full.id} for workflow {workflow_id}")
        return full

    def get(self, question_id: str) -> Optional[Question]:
        return self._load().find(question_id)

    def answer(self, question_id: str, answer: str) -> Optional[Question]:
        """
        Record an answer.

        Returns:
            The updated question, or None if the id is unknown

        Raises:
            QuestionAlreadyAnsweredError: If the question was already answered
        """
        self._ensure_dir()
        with self._lock:
            queue = self._load()
            question = queue.find(question_id)
            if question is None:
                return None
            if question.status == QuestionStatus.ANSWERED:
                raise QuestionAlreadyAnsweredError(question_id)

            question.status = QuestionStatus.ANSWERED
            question.answered_at = utc_now_iso()
            question.answer = answer
            self._save(queue)

        logger.info(f"Answered question {question_id}")
        return question

    def pending(self) -> list[Question]:
        return [q for q in self._load().questions if q.is_pending]

    def workflow_id(self) -> str:
        return self._load().workflow_id

    def clear(self, workflow_id: str = "") -> None:
        """Reset to an empty queue, optionally owned by a new workflow."""
        self.write(QuestionQueue(workflow_id=workflow_id))
