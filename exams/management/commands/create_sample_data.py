from django.core.management.base import BaseCommand
from django.contrib.auth.models import User
from django.utils import timezone
from datetime import timedelta
from exams.models import Exam, ExamEnrollment, ExamStatus, Question, Student

SAMPLE_QUESTIONS = [
    ('Python\'da liste oluşturmak için hangi parantez kullanılır?', '()', '[]', '{}', '<>', 'B'),
    ('HTTP 404 durum kodu neyi ifade eder?', 'Sunucu hatası', 'Yetkisiz', 'Bulunamadı', 'Yönlendirme', 'C'),
    ('SQL\'de tekrarsız kayıtlar için hangi anahtar kelime kullanılır?', 'DISTINCT', 'UNIQUE', 'GROUP', 'ONLY', 'A'),
]


class Command(BaseCommand):
    help = 'Creates sample exams, students and enrollments for development and testing'

    def handle(self, *args, **kwargs):
        now = timezone.now()

        exams = {}
        for title, exam_status, start in [
            ('Python Programlama Temelleri', ExamStatus.OPEN, now - timedelta(minutes=30)),
            ('Web Geliştirme', ExamStatus.SCHEDULED, now + timedelta(days=1)),
            ('Veritabanı Tasarımı', ExamStatus.CLOSED, now - timedelta(days=7)),
        ]:
            exam, created = Exam.objects.get_or_create(
                title=title,
                defaults={
                    'status': exam_status,
                    'start_time': start,
                    'end_time': start + timedelta(hours=2),
                    'duration': 60,
                },
            )
            exams[exam_status] = exam
            if not created:
                self.stdout.write(f'Exam already exists: {title}')
                continue
            for text, a, b, c, d, key in SAMPLE_QUESTIONS:
                Question.objects.create(
                    exam=exam, question_text=text,
                    option_a=a, option_b=b, option_c=c, option_d=d,
                    correct_answer=key,
                )
            self.stdout.write(self.style.SUCCESS(f'Created {exam_status} exam: {title}'))

        if not User.objects.filter(username='instructor').exists():
            instructor = User.objects.create_user(
                username='instructor',
                email='instructor@example.com',
                is_staff=True,
                is_superuser=True
            )
            instructor.set_password('instructor999')
            instructor.save()
            self.stdout.write(self.style.SUCCESS('Created instructor user'))

        student_data = [
            ('1001', 'Ayşe', 'Yılmaz'),
            ('1002', 'Mehmet', 'Kaya'),
            ('1003', 'Zeynep', 'Demir'),
        ]

        for number, first_name, last_name in student_data:
            student, created = Student.objects.get_or_create(
                student_number=number,
                defaults={'first_name': first_name, 'last_name': last_name},
            )
            for exam in exams.values():
                ExamEnrollment.objects.get_or_create(
                    exam=exam, student=student,
                    defaults={'student_code': f'S{number}'},
                )
            if created:
                self.stdout.write(self.style.SUCCESS(f'Created student {number} with code S{number}'))

        self.stdout.write(
            'Student codes are shared across the sample exams; log in with an exam_id to pick one.'
        )
