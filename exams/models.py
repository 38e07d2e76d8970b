from django.db import models
from django.utils import timezone
from django.core.exceptions import ValidationError

from .exceptions import InvalidTransition

# Largest primary key a BigAutoField can hold.
MAX_ID = 2 ** 63 - 1


class ExamStatus(models.TextChoices):
    SCHEDULED = 'scheduled', 'Scheduled'
    OPEN = 'open', 'Open'
    CLOSED = 'closed', 'Closed'


class Exam(models.Model):
    """
    An exam and its lifecycle.

    Lifecycle moves only through explicit transitions:
    scheduled -> open -> closed, with closed -> open allowed as a staff reopen.
    """
    TRANSITIONS = {
        ExamStatus.SCHEDULED: {ExamStatus.OPEN},
        ExamStatus.OPEN: {ExamStatus.CLOSED},
        ExamStatus.CLOSED: {ExamStatus.OPEN},
    }
    DEFAULT_PASSING_GRADE = 80

    title = models.CharField(max_length=255, help_text="The name of the exam")
    description = models.TextField(blank=True, default='')
    status = models.CharField(
        max_length=16,
        choices=ExamStatus.choices,
        default=ExamStatus.SCHEDULED,
        help_text="Lifecycle state; only 'open' admits students and answers",
    )
    start_time = models.DateTimeField(null=True, blank=True, help_text="Planned start (timezone-aware)")
    end_time = models.DateTimeField(null=True, blank=True, help_text="Planned end (timezone-aware)")
    duration = models.PositiveIntegerField(null=True, blank=True, help_text="Duration in minutes")
    passing_grade = models.PositiveSmallIntegerField(
        default=DEFAULT_PASSING_GRADE,
        help_text="Minimum score percentage to pass",
    )
    opened_at = models.DateTimeField(null=True, blank=True)
    closed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.title

    def clean(self):
        """Validate that end_time is after start_time"""
        if self.start_time and self.end_time:
            if self.end_time <= self.start_time:
                raise ValidationError("End time must be after start time")
        if self.passing_grade is not None and self.passing_grade > 100:
            raise ValidationError("Passing grade cannot exceed 100")

    def save(self, *args, **kwargs):
        self.clean()
        super().save(*args, **kwargs)

    @property
    def is_active(self):
        return self.status == ExamStatus.OPEN

    @property
    def is_closed(self):
        return self.status == ExamStatus.CLOSED

    def can_transition_to(self, target):
        return ExamStatus(target) in self.TRANSITIONS.get(ExamStatus(self.status), set())

    def transition_to(self, target):
        if not self.can_transition_to(target):
            raise InvalidTransition(f"Sınav durumu '{self.status}' iken '{target}' durumuna geçilemez")
        now = timezone.now()
        self.status = target
        if target == ExamStatus.OPEN:
            self.opened_at = now
            self.closed_at = None
        elif target == ExamStatus.CLOSED:
            self.closed_at = now
        self.save(update_fields=['status', 'opened_at', 'closed_at', 'updated_at'])

    def open(self):
        self.transition_to(ExamStatus.OPEN)

    def close(self):
        self.transition_to(ExamStatus.CLOSED)

    class Meta:
        ordering = ['-created_at']
        verbose_name = "Exam"
        verbose_name_plural = "Exams"


class Student(models.Model):
    student_number = models.CharField(max_length=32, unique=True)
    first_name = models.CharField(max_length=100)
    last_name = models.CharField(max_length=100)
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.full_name} ({self.student_number})"

    @property
    def full_name(self):
        return f"{self.first_name} {self.last_name}".strip()

    class Meta:
        ordering = ['student_number']


class ExamEnrollment(models.Model):
    """
    Binds one student to one exam with that student's per-exam access code.
    The code is unique within the exam only; the same string may be reused
    by another exam.
    """
    exam = models.ForeignKey(Exam, on_delete=models.CASCADE, related_name='enrollments')
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name='enrollments')
    student_code = models.CharField(max_length=64, help_text="Access code, unique within the exam")
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return f"{self.exam.title} - {self.student.student_number} - {self.student_code}"

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(fields=['exam', 'student_code'], name='unique_code_per_exam'),
            models.UniqueConstraint(fields=['exam', 'student'], name='unique_student_per_exam'),
        ]
        indexes = [
            models.Index(fields=['student_code'], name='enrollment_code_idx'),
        ]


class Question(models.Model):
    CHOICES = ('A', 'B', 'C', 'D')

    exam = models.ForeignKey(Exam, on_delete=models.CASCADE, related_name='questions')
    question_text = models.TextField()
    option_a = models.CharField(max_length=500)
    option_b = models.CharField(max_length=500)
    option_c = models.CharField(max_length=500)
    option_d = models.CharField(max_length=500)
    correct_answer = models.CharField(max_length=1, choices=[(c, c) for c in CHOICES])
    points = models.PositiveSmallIntegerField(default=1)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return self.question_text[:60]

    def is_correct_choice(self, choice):
        """Case-insensitive comparison against the answer key; a blank choice is never correct."""
        if choice is None:
            return False
        return choice.strip().upper() == self.correct_answer.strip().upper()

    class Meta:
        ordering = ['id']


class Answer(models.Model):
    """One student's response to one question; at most one row per (exam, question, student)."""
    exam = models.ForeignKey(Exam, on_delete=models.CASCADE, related_name='answers')
    question = models.ForeignKey(Question, on_delete=models.CASCADE, related_name='answers')
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name='answers')
    student_answer = models.CharField(max_length=1, null=True, blank=True)
    is_correct = models.BooleanField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.exam_id}/{self.question_id}/{self.student_id}: {self.student_answer}"

    class Meta:
        ordering = ['question_id']
        constraints = [
            models.UniqueConstraint(
                fields=['exam', 'question', 'student'],
                name='unique_answer_per_question',
            ),
        ]
        indexes = [
            models.Index(fields=['exam', 'student'], name='answer_exam_student_idx'),
        ]


class ExamResult(models.Model):
    """Materialized score summary. Always rewritten from answers, never edited directly."""
    exam = models.ForeignKey(Exam, on_delete=models.CASCADE, related_name='results')
    student = models.ForeignKey(Student, on_delete=models.CASCADE, related_name='results')
    score = models.DecimalField(max_digits=5, decimal_places=2, default=0)
    correct_count = models.PositiveIntegerField(default=0)
    wrong_count = models.PositiveIntegerField(default=0)
    total_questions = models.PositiveIntegerField(default=0)
    is_complete = models.BooleanField(default=False)
    computed_at = models.DateTimeField(default=timezone.now)

    def __str__(self):
        return f"{self.exam.title} - {self.student.student_number}: {self.score}"

    class Meta:
        ordering = ['-computed_at']
        constraints = [
            models.UniqueConstraint(fields=['exam', 'student'], name='unique_result_per_student'),
        ]
