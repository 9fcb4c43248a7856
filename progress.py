"""Progress arithmetic.

Pure functions only: nothing here reads or writes the store. The coordinator
persists what these functions return.
"""

from dataclasses import dataclass
from typing import FrozenSet, Iterable, Optional, Sequence

from entities import Progress, QuizQuestion, utc_now_iso

# Minimum quiz score (percent) that validates a subject for a student.
QUIZ_PASS_MARK = 70


@dataclass(frozen=True)
class ProgressUpdate:
    completed_subjects: FrozenSet[str]
    completed: bool
    score: int
    completion_date: str


def percentage(part: int, whole: int) -> int:
    """Integer percentage using Python's ``round`` (halves go to even)."""
    if whole <= 0:
        return 0
    return round(100 * part / whole)


def evaluate(subject_ids: Sequence[str], completed_subjects: Iterable[str],
             now: Optional[str] = None) -> ProgressUpdate:
    """Recompute ``completed`` and ``score`` together from a completed set.

    Ids that are not subjects of the session are dropped so the set always
    stays a subset of the session's subjects.
    """
    valid = frozenset(subject_ids)
    done = frozenset(completed_subjects) & valid
    return ProgressUpdate(
        completed_subjects=done,
        completed=len(valid) > 0 and len(done) == len(valid),
        score=percentage(len(done), len(valid)),
        completion_date=now or utc_now_iso(),
    )


def toggle(subject_ids: Sequence[str], completed_subjects: Iterable[str], subject_id: str,
           now: Optional[str] = None) -> ProgressUpdate:
    """Add ``subject_id`` if absent, remove it otherwise, then recompute."""
    if subject_id not in subject_ids:
        raise ValueError(f'{subject_id!r} is not a subject of this session')
    return evaluate(subject_ids, frozenset(completed_subjects) ^ {subject_id}, now)


def mark_done(subject_ids: Sequence[str], completed_subjects: Iterable[str], subject_id: str,
              now: Optional[str] = None) -> ProgressUpdate:
    """Add-only variant used when a student validates a subject."""
    if subject_id not in subject_ids:
        raise ValueError(f'{subject_id!r} is not a subject of this session')
    return evaluate(subject_ids, frozenset(completed_subjects) | {subject_id}, now)


def apply(record: Progress, update: ProgressUpdate) -> Progress:
    return Progress(
        student_id=record.student_id,
        session_id=record.session_id,
        score=update.score,
        completed=update.completed,
        completed_subjects=update.completed_subjects,
        completion_date=update.completion_date,
    )


def quiz_score(questions: Sequence[QuizQuestion], answers: Sequence[int]) -> int:
    """Percentage of questions answered with their correct option."""
    correct = sum(
        1 for question, answer in zip(questions, answers) if answer == question.correct_index
    )
    return percentage(correct, len(questions))


def passes(score: int) -> bool:
    return score >= QUIZ_PASS_MARK


def average_score(records: Iterable[Progress]) -> int:
    records = list(records)
    if not records:
        return 0
    return percentage(sum(r.score for r in records), 100 * len(records))
