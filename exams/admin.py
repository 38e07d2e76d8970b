from django.contrib import admin, messages
from django.urls import reverse
from django.utils.html import format_html, format_html_join
from django.utils.safestring import mark_safe

from .exceptions import InvalidTransition
from .models import Answer, Exam, ExamEnrollment, ExamResult, ExamStatus, Question, Student
from .services import ScoringService


class QuestionInline(admin.TabularInline):
    model = Question
    extra = 0
    fields = ['question_text', 'correct_answer', 'points']


@admin.register(Exam)
class ExamAdmin(admin.ModelAdmin):
    """Exams with lifecycle actions and a live summary"""

    list_display = ['title', 'status_display', 'question_count', 'enrollment_count', 'passing_grade', 'created_at']
    list_filter = ['status', ('start_time', admin.DateFieldListFilter), 'created_at']
    search_fields = ['title']
    readonly_fields = ['status', 'opened_at', 'closed_at', 'created_at', 'updated_at', 'live_summary']
    date_hierarchy = 'created_at'
    inlines = [QuestionInline]

    fieldsets = (
        ('Exam Information', {
            'fields': ('title', 'description', 'passing_grade', 'duration')
        }),
        ('Schedule', {
            'fields': ('start_time', 'end_time'),
        }),
        ('Lifecycle', {
            'fields': ('status', 'opened_at', 'closed_at'),
            'description': 'Use the list actions to open or close the exam'
        }),
        ('Live Results', {
            'fields': ('live_summary',),
            'classes': ('collapse',)
        }),
        ('Metadata', {
            'fields': ('created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    STATUS_COLORS = {
        ExamStatus.SCHEDULED: '#0d6efd',
        ExamStatus.OPEN: '#198754',
        ExamStatus.CLOSED: '#6c757d',
    }

    def status_display(self, obj):
        color = self.STATUS_COLORS.get(ExamStatus(obj.status), "#6c757d")
        return format_html(
            '<span style="color: {}; font-weight: bold;">●</span> {}',
            color, obj.get_status_display()
        )
    status_display.short_description = 'Status'

    def question_count(self, obj):
        return obj.questions.count()
    question_count.short_description = 'Questions'

    def enrollment_count(self, obj):
        count = obj.enrollments.count()
        if count > 0:
            url = reverse('admin:exams_examenrollment_changelist')
            return format_html('<a href="{}?exam__id__exact={}">{} students</a>', url, obj.id, count)
        return "0 students"
    enrollment_count.short_description = 'Enrolled'

    def live_summary(self, obj):
        if not obj.pk:
            return "-"
        aggregate = ScoringService.aggregate_exam(obj.pk)
        stats = [
            f"Enrolled: {aggregate.total_students}",
            f"Started: {aggregate.students_started}",
            f"Average: {aggregate.average_score}",
            f"Highest: {aggregate.highest_score}",
            f"Lowest: {aggregate.lowest_score}",
        ]
        return format_html_join(mark_safe("<br>"), "{}", ((s,) for s in stats))
    live_summary.short_description = 'Live Summary'

    actions = ['open_exams', 'close_exams']

    def _transition(self, request, queryset, target):
        changed = 0
        for exam in queryset:
            try:
                exam.transition_to(target)
                changed += 1
            except InvalidTransition as e:
                self.message_user(request, f'{exam.title}: {e.detail}', level=messages.WARNING)
        return changed

    def open_exams(self, request, queryset):
        changed = self._transition(request, queryset, ExamStatus.OPEN)
        self.message_user(request, f'{changed} exam{"s" if changed != 1 else ""} opened.')
    open_exams.short_description = "Open selected exams"

    def close_exams(self, request, queryset):
        changed = self._transition(request, queryset, ExamStatus.CLOSED)
        self.message_user(request, f'{changed} exam{"s" if changed != 1 else ""} closed.')
    close_exams.short_description = "Close selected exams"


@admin.register(Student)
class StudentAdmin(admin.ModelAdmin):
    list_display = ['student_number', 'first_name', 'last_name', 'created_at']
    search_fields = ['student_number', 'first_name', 'last_name']


@admin.register(ExamEnrollment)
class ExamEnrollmentAdmin(admin.ModelAdmin):
    list_display = ['masked_code', 'exam_link', 'student', 'created_at']
    list_filter = ['exam']
    search_fields = ['exam__title', 'student__student_number', 'student__first_name', 'student__last_name', 'student_code']
    raw_id_fields = ['exam', 'student']

    def masked_code(self, obj):
        """Avoid exposing full access codes in list views"""
        if len(obj.student_code) > 4:
            return f"{obj.student_code[:2]}...{obj.student_code[-2:]}"
        return obj.student_code[:1] + "..."
    masked_code.short_description = 'Code'

    def exam_link(self, obj):
        url = reverse('admin:exams_exam_change', args=[obj.exam.id])
        return format_html('<a href="{}">{}</a>', url, obj.exam.title)
    exam_link.short_description = 'Exam'

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('exam', 'student')


@admin.register(Question)
class QuestionAdmin(admin.ModelAdmin):
    list_display = ['__str__', 'exam', 'correct_answer', 'points']
    list_filter = ['exam']
    search_fields = ['question_text']


@admin.register(Answer)
class AnswerAdmin(admin.ModelAdmin):
    """Answers are written by students only; the admin view is read-only."""
    list_display = ['exam', 'question', 'student', 'student_answer', 'is_correct', 'updated_at']
    list_filter = ['exam', 'is_correct']
    search_fields = ['student__student_number']

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def get_queryset(self, request):
        return super().get_queryset(request).select_related('exam', 'question', 'student')


@admin.register(ExamResult)
class ExamResultAdmin(admin.ModelAdmin):
    list_display = ['exam', 'student', 'score', 'correct_count', 'wrong_count', 'total_questions', 'is_complete', 'computed_at']
    list_filter = ['exam', 'is_complete']
    readonly_fields = ['exam', 'student', 'score', 'correct_count', 'wrong_count', 'total_questions', 'is_complete', 'computed_at']
    actions = ['recompute']

    def has_add_permission(self, request):
        return False

    def recompute(self, request, queryset):
        """Rewrite the selected results from stored answers"""
        for result in queryset:
            ScoringService.record_result(result.exam_id, result.student_id)
        count = queryset.count()
        self.message_user(request, f'Recomputed {count} result{"s" if count != 1 else ""}.')
    recompute.short_description = "Recompute selected results from answers"


admin.site.site_header = "Exam Portal Administration"
admin.site.site_title = "Exam Portal Admin"
admin.site.index_title = "Exam Control Panel"
