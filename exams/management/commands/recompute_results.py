import logging

from django.core.management.base import BaseCommand, CommandError

from exams.exceptions import ExamAccessError
from exams.models import Exam
from exams.services import ScoringService

logger = logging.getLogger('exams')


class Command(BaseCommand):
    """
    Rebuild stored exam results from answers. Results are derived data, so
    this is always safe to run, including while an exam is open.
    """
    help = 'Recompute stored exam results from submitted answers'

    def add_arguments(self, parser):
        parser.add_argument(
            '--exam',
            type=int,
            action='append',
            dest='exams',
            help='Only recompute this exam (may be repeated). Default: every exam',
        )
        parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Show the scores that would be stored without writing them',
        )

    def handle(self, *args, **options):
        dry_run = options['dry_run']
        exams = Exam.objects.all().order_by('id')
        if options['exams']:
            exams = exams.filter(id__in=options['exams'])
            missing = set(options['exams']) - set(exams.values_list('id', flat=True))
            if missing:
                raise CommandError(f"Unknown exam id(s): {', '.join(str(m) for m in sorted(missing))}")

        self.stdout.write(self.style.HTTP_INFO('=== Exam Result Recompute ===\n'))

        total = 0
        for exam in exams:
            student_ids = list(exam.enrollments.values_list('student_id', flat=True))
            self.stdout.write(f'{exam.title} [{exam.status}]: {len(student_ids)} students')
            try:
                if dry_run:
                    for student_id in student_ids:
                        result = ScoringService.score_student(exam.id, student_id)
                        self.stdout.write(
                            f'  • student {student_id:<8} | score {result.score:>6} | '
                            f'{result.correct_count}/{result.total_questions} correct'
                        )
                    continue
                total += ScoringService.recompute_exam(exam.id)
            except ExamAccessError as e:
                raise CommandError(f'Error recomputing exam {exam.id}: {e.detail}')

        if dry_run:
            self.stdout.write(self.style.WARNING('\nDRY RUN: no results were written.'))
            return

        self.stdout.write(self.style.SUCCESS(f'Recomputed {total} results.'))
        logger.info(f'Recomputed {total} results via management command')
