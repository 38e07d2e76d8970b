from rest_framework import serializers

from .models import MAX_ID, Answer, Exam, ExamEnrollment, ExamResult, Question


class StudentLoginSerializer(serializers.Serializer):
    """
    Student login payload, sent as a form or JSON:
    {
        "student_code": "S1001",
        "exam_id": 3            // optional, picks one exam when the code is shared
    }
    The legacy form field name "student-code" is accepted as well.
    """
    student_code = serializers.CharField(
        trim_whitespace=True,
        allow_blank=True,
        required=False,
        help_text="Per-exam student access code",
    )
    exam_id = serializers.IntegerField(
        required=False,
        allow_null=True,
        min_value=1,
        max_value=MAX_ID,
        help_text="Target exam, required only when the code belongs to several exams",
    )

    def to_internal_value(self, data):
        if hasattr(data, 'get') and not data.get('student_code') and data.get('student-code'):
            data = {
                'student_code': data.get('student-code'),
                'exam_id': data.get('exam_id') or None,
            }
        return super().to_internal_value(data)


class ExamCandidateSerializer(serializers.ModelSerializer):
    """One exam a shared student code could refer to."""
    exam_id = serializers.IntegerField(source='exam.id')
    title = serializers.CharField(source='exam.title')
    status = serializers.CharField(source='exam.status')

    class Meta:
        model = ExamEnrollment
        fields = ['exam_id', 'title', 'status']


class ErrorResponseSerializer(serializers.Serializer):
    """
    Error body returned by the exam endpoints:
    {"detail": "Bu sınav henüz aktif değil", "code": "exam_not_active"}
    """
    detail = serializers.CharField(help_text="User-facing message")
    code = serializers.CharField(help_text="Stable error code")


class CandidateListSerializer(serializers.Serializer):
    detail = serializers.CharField()
    candidates = ExamCandidateSerializer(many=True)


class QuestionSerializer(serializers.ModelSerializer):
    """Question as shown to a student; the answer key is never included."""

    class Meta:
        model = Question
        fields = ['id', 'question_text', 'option_a', 'option_b', 'option_c', 'option_d', 'points']


class ExamSessionSerializer(serializers.ModelSerializer):
    questions = QuestionSerializer(many=True, read_only=True)
    is_active = serializers.BooleanField(read_only=True)

    class Meta:
        model = Exam
        fields = ['id', 'title', 'description', 'status', 'is_active', 'duration', 'passing_grade', 'questions']


class AnswerSubmissionSerializer(serializers.Serializer):
    """
    Answer payload:
    {
        "question_id": 12,
        "answer": "B",
        "exam_id": 3,             // optional, must match the URL
        "student_code": "S1001"   // optional, or student_id; must match the session
    }
    """
    question_id = serializers.IntegerField(min_value=1, max_value=MAX_ID)
    answer = serializers.CharField(allow_null=True, allow_blank=True, max_length=1, trim_whitespace=True)
    exam_id = serializers.IntegerField(required=False, min_value=1, max_value=MAX_ID)
    student_id = serializers.IntegerField(required=False, min_value=1, max_value=MAX_ID)
    student_code = serializers.CharField(required=False, trim_whitespace=True)

    def validate_answer(self, value):
        if value is None or value == '':
            return None
        value = value.upper()
        if value not in Question.CHOICES:
            raise serializers.ValidationError("Geçersiz cevap seçeneği")
        return value


class AnswerSerializer(serializers.ModelSerializer):
    answer = serializers.CharField(source='student_answer', allow_null=True)

    class Meta:
        model = Answer
        fields = ['id', 'exam_id', 'question_id', 'student_id', 'answer', 'is_correct', 'created_at', 'updated_at']


class StudentScoreSerializer(serializers.Serializer):
    exam_id = serializers.IntegerField()
    student_id = serializers.IntegerField()
    student_name = serializers.CharField(allow_blank=True)
    score = serializers.FloatField()
    correct_count = serializers.IntegerField()
    wrong_count = serializers.IntegerField()
    unanswered_count = serializers.IntegerField()
    answered_count = serializers.IntegerField()
    total_questions = serializers.IntegerField()
    passing_grade = serializers.IntegerField()
    passed = serializers.BooleanField()
    is_complete = serializers.BooleanField()


class QuestionReviewSerializer(serializers.Serializer):
    question_id = serializers.IntegerField()
    question_text = serializers.CharField()
    options = serializers.DictField(child=serializers.CharField())
    correct_answer = serializers.CharField()
    student_answer = serializers.CharField(allow_null=True)
    is_correct = serializers.BooleanField()


class StudentResultSerializer(StudentScoreSerializer):
    """
    Student result page. `questions` holds the per-question review and is
    only present once the exam is closed.
    """
    questions = QuestionReviewSerializer(many=True, required=False)


class QuestionStatsSerializer(serializers.Serializer):
    question_id = serializers.IntegerField()
    total_answers = serializers.IntegerField()
    correct_answers = serializers.IntegerField()
    wrong_answers = serializers.IntegerField()


class ExamAggregateSerializer(serializers.Serializer):
    exam_id = serializers.IntegerField()
    status = serializers.CharField()
    total_questions = serializers.IntegerField()
    total_students = serializers.IntegerField()
    students_started = serializers.IntegerField()
    correct_count = serializers.IntegerField()
    wrong_count = serializers.IntegerField()
    average_score = serializers.FloatField()
    highest_score = serializers.FloatField()
    lowest_score = serializers.FloatField()
    is_complete = serializers.BooleanField()
    questions = QuestionStatsSerializer(many=True)
    students = StudentScoreSerializer(many=True)


class ExamResultSerializer(serializers.ModelSerializer):
    """Stored result summary as written by the last recompute"""
    score = serializers.FloatField()

    class Meta:
        model = ExamResult
        fields = ['exam_id', 'student_id', 'score', 'correct_count', 'wrong_count',
                  'total_questions', 'is_complete', 'computed_at']


class ExamStatusSerializer(serializers.ModelSerializer):
    is_active = serializers.BooleanField(read_only=True)

    class Meta:
        model = Exam
        fields = ['id', 'title', 'status', 'is_active', 'opened_at', 'closed_at']


class StaffLoginSerializer(serializers.Serializer):
    username = serializers.CharField()
    password = serializers.CharField(trim_whitespace=False)
