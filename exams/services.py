import logging
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional

from django.db import transaction
from django.utils import timezone

from .exceptions import (
    ExamClosed,
    ExamMismatch,
    ExamNotActive,
    NotFound,
    UnknownQuestion,
    ValidationError,
)
from .models import MAX_ID, Answer, Exam, ExamEnrollment, ExamResult, ExamStatus, Question
from .store import store_call

logger = logging.getLogger('exams')


def mask_code(code: str) -> str:
    """Keep student codes out of logs beyond a short prefix."""
    if not code:
        return ''
    return f"{code[:2]}***" if len(code) > 2 else '***'


def _as_int(value, name):
    """Parse an id; anything a primary key column cannot hold is invalid."""
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"Geçersiz {name}")
    if not -MAX_ID - 1 <= number <= MAX_ID:
        raise ValidationError(f"Geçersiz {name}")
    return number


@dataclass
class RegistryMatch:
    """Outcome of a student code lookup: one enrollment, or several to choose from."""
    candidates: List[ExamEnrollment]

    @property
    def is_ambiguous(self):
        return len(self.candidates) > 1

    @property
    def enrollment(self) -> Optional[ExamEnrollment]:
        return None if self.is_ambiguous else self.candidates[0]


class StudentRegistry:
    """
    Resolves student codes to enrollments. Read-only; every call goes to the
    database so activation changes are seen immediately.
    """

    @staticmethod
    def normalize_code(raw_code) -> str:
        if raw_code is None:
            return ''
        return str(raw_code).strip()

    @classmethod
    @store_call
    def lookup(cls, raw_code, exam_id=None) -> RegistryMatch:
        """
        Find the enrollment for a student code.

        Args:
            raw_code: The code as typed; surrounding whitespace is ignored, case is kept
            exam_id: Optional target exam; when given the lookup is keyed by (code, exam)

        Returns:
            RegistryMatch: a single enrollment, or every candidate when the code
            belongs to several exams and no target exam was supplied

        Raises:
            ValidationError, NotFound, ExamMismatch, ExamNotActive
        """
        code = cls.normalize_code(raw_code)
        if not code:
            raise ValidationError('Öğrenci numarası gerekli')

        enrollments = ExamEnrollment.objects.select_related('exam', 'student').filter(student_code=code)

        if exam_id is not None and exam_id != '':
            target = _as_int(exam_id, 'sınav numarası')
            enrollment = enrollments.filter(exam_id=target).first()
            if enrollment is None:
                if enrollments.exists():
                    logger.warning(f"Code {mask_code(code)} used for exam {target} but enrolled elsewhere")
                    raise ExamMismatch()
                logger.warning(f"Unknown student code {mask_code(code)} for exam {target}")
                raise NotFound()
            cls.ensure_active(enrollment.exam)
            return RegistryMatch(candidates=[enrollment])

        candidates = list(enrollments.order_by('exam_id'))
        if not candidates:
            logger.warning(f"Unknown student code {mask_code(code)}")
            raise NotFound()
        if len(candidates) > 1:
            logger.info(f"Code {mask_code(code)} matches {len(candidates)} exams, selection required")
            return RegistryMatch(candidates=candidates)

        cls.ensure_active(candidates[0].exam)
        return RegistryMatch(candidates=candidates)

    @staticmethod
    def ensure_active(exam: Exam):
        if exam.is_active:
            return
        if exam.status == ExamStatus.CLOSED:
            raise ExamNotActive('Bu sınav sona erdi', exam_status=exam.status)
        raise ExamNotActive('Bu sınav henüz aktif değil', exam_status=exam.status)

    @classmethod
    @store_call
    def resolve_credential(cls, credential) -> ExamEnrollment:
        """
        Re-derive the enrollment a session credential points at. The exam's
        state is read fresh; nothing carried in the token is trusted beyond
        the identifiers.
        """
        exam_id = _as_int(credential.exam_id, 'sınav numarası')
        enrollment = (
            ExamEnrollment.objects.select_related('exam', 'student')
            .filter(exam_id=exam_id, student_code=credential.student_code)
            .first()
        )
        if enrollment is None:
            raise NotFound()
        if str(enrollment.student_id) != credential.student_id:
            raise ExamMismatch()
        return enrollment


class AnswerSubmissionService:
    """Stores one answer per (exam, question, student), overwriting earlier submissions."""

    @staticmethod
    def normalize_choice(choice):
        if choice is None:
            return None
        value = str(choice).strip().upper()
        if value == '':
            return None
        if value not in Question.CHOICES:
            raise ValidationError('Geçersiz cevap seçeneği')
        return value

    @classmethod
    @store_call
    def submit(cls, exam_id, question_id, student_id, choice):
        """
        Record a student's answer and grade it against the current key.

        Returns:
            tuple: (Answer, created) where created is False when an earlier
            answer for the same question was overwritten
        """
        if exam_id is None or question_id is None or student_id is None:
            raise ValidationError()
        exam_id = _as_int(exam_id, 'sınav numarası')
        question_id = _as_int(question_id, 'soru numarası')
        student_id = _as_int(student_id, 'öğrenci numarası')
        choice = cls.normalize_choice(choice)

        exam = Exam.objects.filter(id=exam_id).first()
        if exam is None:
            raise NotFound('Sınav bulunamadı')
        if not exam.is_active:
            logger.warning(f"Answer rejected for exam {exam_id} in state '{exam.status}' (student {student_id})")
            raise ExamClosed()

        question = Question.objects.filter(id=question_id, exam_id=exam_id).first()
        if question is None:
            raise UnknownQuestion()

        if not ExamEnrollment.objects.filter(exam_id=exam_id, student_id=student_id).exists():
            raise ValidationError('Öğrenci bu sınava kayıtlı değil')

        # The unique constraint on the triple settles concurrent double submissions.
        with transaction.atomic():
            answer, created = Answer.objects.update_or_create(
                exam_id=exam_id,
                question_id=question_id,
                student_id=student_id,
                defaults={
                    'student_answer': choice,
                    'is_correct': question.is_correct_choice(choice),
                },
            )

        logger.info(
            f"Answer {'stored' if created else 'updated'} for exam {exam_id}, "
            f"question {question_id}, student {student_id}"
        )
        return answer, created


@dataclass
class StudentScore:
    exam_id: int
    student_id: int
    score: float
    correct_count: int
    wrong_count: int
    unanswered_count: int
    total_questions: int
    passing_grade: int
    is_complete: bool
    student_name: str = ''

    @property
    def passed(self):
        return self.score >= self.passing_grade

    @property
    def answered_count(self):
        return self.correct_count + self.wrong_count

    def as_dict(self):
        return {
            'exam_id': self.exam_id,
            'student_id': self.student_id,
            'student_name': self.student_name,
            'score': self.score,
            'correct_count': self.correct_count,
            'wrong_count': self.wrong_count,
            'unanswered_count': self.unanswered_count,
            'answered_count': self.answered_count,
            'total_questions': self.total_questions,
            'passing_grade': self.passing_grade,
            'passed': self.passed,
            'is_complete': self.is_complete,
        }


@dataclass
class QuestionReview:
    """One question as shown on a student's result page after the exam closes."""
    question_id: int
    question_text: str
    options: dict
    correct_answer: str
    student_answer: Optional[str]
    is_correct: bool


@dataclass
class QuestionStats:
    question_id: int
    total_answers: int = 0
    correct_answers: int = 0
    wrong_answers: int = 0


@dataclass
class ExamAggregate:
    exam_id: int
    status: str
    total_questions: int
    total_students: int
    students_started: int
    correct_count: int
    wrong_count: int
    average_score: float
    highest_score: float
    lowest_score: float
    is_complete: bool
    questions: List[QuestionStats] = field(default_factory=list)
    students: List[StudentScore] = field(default_factory=list)

    def as_dict(self):
        return {
            'exam_id': self.exam_id,
            'status': self.status,
            'total_questions': self.total_questions,
            'total_students': self.total_students,
            'students_started': self.students_started,
            'correct_count': self.correct_count,
            'wrong_count': self.wrong_count,
            'average_score': self.average_score,
            'highest_score': self.highest_score,
            'lowest_score': self.lowest_score,
            'is_complete': self.is_complete,
            'questions': [vars(q) for q in self.questions],
            'students': [s.as_dict() for s in self.students],
        }


def compute_score(correct_count, total_questions) -> float:
    """Percentage of questions answered correctly, rounded to two places."""
    if total_questions <= 0:
        return 0.0
    value = Decimal(correct_count * 100) / Decimal(total_questions)
    return float(value.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP))


class ScoringService:
    """
    Derives results from stored answers. Nothing here is cached; each call
    reads the current answer set, so it is safe to run while the exam is open.
    """

    @staticmethod
    def _tally(answers, question_ids):
        """Count one answer per known question; orphaned answers are dropped."""
        seen = set()
        correct = wrong = 0
        for student_answer, is_correct, question_id in answers:
            if question_id not in question_ids or question_id in seen:
                continue
            seen.add(question_id)
            if student_answer is None:
                continue
            if is_correct:
                correct += 1
            else:
                wrong += 1
        return correct, wrong

    @classmethod
    def _score(cls, exam, student_id, answers, question_ids, student_name=''):
        total = len(question_ids)
        correct, wrong = cls._tally(answers, question_ids)
        unanswered = total - correct - wrong
        return StudentScore(
            exam_id=exam.id,
            student_id=student_id,
            score=compute_score(correct, total),
            correct_count=correct,
            wrong_count=wrong,
            unanswered_count=unanswered,
            total_questions=total,
            passing_grade=exam.passing_grade,
            is_complete=exam.is_closed or unanswered == 0,
            student_name=student_name,
        )

    @staticmethod
    def _get_exam(exam_id):
        exam = Exam.objects.filter(id=_as_int(exam_id, 'sınav numarası')).first()
        if exam is None:
            raise NotFound('Sınav bulunamadı')
        return exam

    @classmethod
    @store_call
    def score_student(cls, exam_id, student_id) -> StudentScore:
        exam = cls._get_exam(exam_id)
        student_id = _as_int(student_id, 'öğrenci numarası')
        question_ids = set(exam.questions.values_list('id', flat=True))
        answers = Answer.objects.filter(exam=exam, student_id=student_id).values_list(
            'student_answer', 'is_correct', 'question_id'
        )
        return cls._score(exam, student_id, answers, question_ids)

    @classmethod
    @store_call
    def review_answers(cls, exam_id, student_id) -> List[QuestionReview]:
        """
        Every question of the exam with the student's stored answer and the
        answer key. Reveals the key, so callers show it only for closed exams.
        """
        exam = cls._get_exam(exam_id)
        student_id = _as_int(student_id, 'öğrenci numarası')
        answers = {
            question_id: (student_answer, is_correct)
            for question_id, student_answer, is_correct in Answer.objects.filter(
                exam=exam, student_id=student_id
            ).values_list('question_id', 'student_answer', 'is_correct')
        }
        review = []
        for question in exam.questions.order_by('id'):
            student_answer, is_correct = answers.get(question.id, (None, False))
            review.append(QuestionReview(
                question_id=question.id,
                question_text=question.question_text,
                options={
                    'A': question.option_a,
                    'B': question.option_b,
                    'C': question.option_c,
                    'D': question.option_d,
                },
                correct_answer=question.correct_answer,
                student_answer=student_answer,
                is_correct=bool(is_correct) and student_answer is not None,
            ))
        return review

    @classmethod
    @store_call
    def record_result(cls, exam_id, student_id) -> StudentScore:
        """Recompute a student's result from answers and upsert the stored summary."""
        result = cls.score_student(exam_id, student_id)
        with transaction.atomic():
            ExamResult.objects.update_or_create(
                exam_id=result.exam_id,
                student_id=result.student_id,
                defaults={
                    'score': Decimal(str(result.score)),
                    'correct_count': result.correct_count,
                    'wrong_count': result.wrong_count,
                    'total_questions': result.total_questions,
                    'is_complete': result.is_complete,
                    'computed_at': timezone.now(),
                },
            )
        logger.info(
            f"Result recorded for exam {result.exam_id}, student {result.student_id}: "
            f"{result.score} ({result.correct_count}/{result.total_questions})"
        )
        return result

    @classmethod
    @store_call
    def recompute_exam(cls, exam_id) -> int:
        """Rewrite stored results for every enrolled student. Returns the number written."""
        exam = cls._get_exam(exam_id)
        count = 0
        for student_id in exam.enrollments.values_list('student_id', flat=True):
            cls.record_result(exam.id, student_id)
            count += 1
        return count

    @classmethod
    @store_call
    def aggregate_exam(cls, exam_id) -> ExamAggregate:
        """
        Exam-wide view for live dashboards.

        While the exam is not closed, averages cover only students with at
        least one answer. Once it is closed every enrolled student counts and
        those who never answered score zero.
        """
        exam = cls._get_exam(exam_id)
        question_ids = set(exam.questions.values_list('id', flat=True))
        names = {
            student_id: f"{first_name} {last_name}".strip()
            for student_id, first_name, last_name in exam.enrollments.values_list(
                'student_id', 'student__first_name', 'student__last_name'
            )
        }
        enrolled = list(names)

        per_student = {student_id: [] for student_id in enrolled}
        question_stats = {qid: QuestionStats(question_id=qid) for qid in sorted(question_ids)}
        rows = Answer.objects.filter(exam=exam, student_id__in=enrolled).values_list(
            'student_id', 'student_answer', 'is_correct', 'question_id'
        )
        for student_id, student_answer, is_correct, question_id in rows:
            per_student[student_id].append((student_answer, is_correct, question_id))
            stats = question_stats.get(question_id)
            if stats is None or student_answer is None:
                continue
            stats.total_answers += 1
            if is_correct:
                stats.correct_answers += 1
            else:
                stats.wrong_answers += 1

        scores = []
        started = 0
        for student_id in enrolled:
            answers = per_student[student_id]
            has_answers = any(a[0] is not None and a[2] in question_ids for a in answers)
            if has_answers:
                started += 1
            if has_answers or exam.is_closed:
                scores.append(cls._score(exam, student_id, answers, question_ids, names[student_id]))

        values = [s.score for s in scores]
        average = round(sum(values) / len(values), 2) if values else 0.0

        return ExamAggregate(
            exam_id=exam.id,
            status=exam.status,
            total_questions=len(question_ids),
            total_students=len(enrolled),
            students_started=started,
            correct_count=sum(s.correct_count for s in scores),
            wrong_count=sum(s.wrong_count for s in scores),
            average_score=average,
            highest_score=max(values) if values else 0.0,
            lowest_score=min(values) if values else 0.0,
            is_complete=exam.is_closed,
            questions=list(question_stats.values()),
            students=scores,
        )
