import base64
import json
from datetime import timedelta
from io import StringIO
from unittest.mock import patch

from django.conf import settings
from django.contrib.auth.models import User
from django.core.exceptions import ValidationError as DjangoValidationError
from django.core.management import CommandError, call_command
from django.db import OperationalError
from django.db.models.query import QuerySet
from django.test import TestCase, override_settings
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient

from exams.exceptions import (
    ExamClosed,
    ExamMismatch,
    ExamNotActive,
    InvalidTransition,
    MalformedToken,
    NotFound,
    StoreUnavailable,
    UnknownQuestion,
    ValidationError,
)
from exams.middleware import ExamAccessGate, GateOutcome, GateState
from exams.models import Answer, Exam, ExamEnrollment, ExamResult, ExamStatus, Question, Student
from exams.services import AnswerSubmissionService, ScoringService, StudentRegistry, compute_score
from exams.tokens import SessionCredential, decode_token, encode_token

COOKIE = settings.EXAM_TOKEN_COOKIE_NAME


class ExamFixtureMixin:
    """Builds an open exam E1 with four questions and a scheduled exam E2."""

    def make_exam(self, title, exam_status=ExamStatus.OPEN, keys=('B', 'A', 'C', 'D')):
        exam = Exam.objects.create(title=title, status=exam_status)
        for i, key in enumerate(keys, start=1):
            Question.objects.create(
                exam=exam,
                question_text=f'{title} soru {i}',
                option_a='a', option_b='b', option_c='c', option_d='d',
                correct_answer=key,
            )
        return exam

    def enroll(self, exam, student, code):
        return ExamEnrollment.objects.create(exam=exam, student=student, student_code=code)

    def setUp(self):
        self.e1 = self.make_exam('E1')
        self.e2 = self.make_exam('E2', exam_status=ExamStatus.SCHEDULED)
        self.s1 = Student.objects.create(student_number='1001', first_name='Ayşe', last_name='Yılmaz')
        self.s2 = Student.objects.create(student_number='1002', first_name='Mehmet', last_name='Kaya')
        self.enrollment1 = self.enroll(self.e1, self.s1, 'S1001')
        self.enrollment2 = self.enroll(self.e2, self.s2, 'S1002')
        self.q1, self.q2, self.q3, self.q4 = self.e1.questions.order_by('id')


class SessionTokenCodecTest(TestCase):
    """Encoding and decoding of the session cookie value"""

    def setUp(self):
        self.credential = SessionCredential(exam_id='7', student_id='42', student_code='S1001')

    def test_round_trip(self):
        self.assertEqual(decode_token(encode_token(self.credential)), self.credential)

    def test_round_trip_non_ascii_code(self):
        credential = SessionCredential(exam_id='1', student_id='2', student_code='Öğr-çş 9')
        self.assertEqual(decode_token(encode_token(credential)), credential)

    def test_token_is_cookie_safe(self):
        token = encode_token(self.credential)
        safe_chars = set('ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_')
        self.assertTrue(set(token) <= safe_chars)

    def test_prefix_marker_is_stripped(self):
        token = 'base64-' + encode_token(self.credential)
        self.assertEqual(decode_token(token), self.credential)

    def test_raw_json_fallback(self):
        raw = json.dumps({'examId': '7', 'studentId': '42', 'studentCode': 'S1001'})
        self.assertEqual(decode_token(raw), self.credential)

    def test_padded_base64_is_accepted(self):
        raw = json.dumps({'examId': '7', 'studentId': '42', 'studentCode': 'S1001'})
        token = base64.urlsafe_b64encode(raw.encode()).decode()
        self.assertEqual(decode_token(token), self.credential)

    def test_numeric_ids_are_read_as_strings(self):
        raw = json.dumps({'examId': 7, 'studentId': 42, 'studentCode': 'S1001'})
        self.assertEqual(decode_token(raw), self.credential)

    def test_extra_fields_are_ignored(self):
        raw = json.dumps({'examId': '7', 'studentId': '42', 'studentCode': 'S1001', 'timestamp': 1})
        self.assertEqual(decode_token(raw), self.credential)

    def test_garbage_is_rejected(self):
        for raw in ['', '   ', 'not-a-token!!', '{"examId": "7"', 'W10', '[]', 'null']:
            with self.assertRaises(MalformedToken):
                decode_token(raw)

    def test_partial_token_is_rejected(self):
        for payload in [
            {'examId': '7', 'studentId': '42'},
            {'examId': '7', 'studentCode': 'S1001'},
            {'studentId': '42', 'studentCode': 'S1001'},
            {'examId': '', 'studentId': '42', 'studentCode': 'S1001'},
            {'examId': '7', 'studentId': '42', 'studentCode': '  '},
            {'examId': '7', 'studentId': None, 'studentCode': 'S1001'},
            {'examId': True, 'studentId': '42', 'studentCode': 'S1001'},
        ]:
            token = base64.urlsafe_b64encode(json.dumps(payload).encode()).decode()
            with self.assertRaises(MalformedToken):
                decode_token(token)

    @override_settings(EXAM_TOKEN_SIGNED=True)
    def test_signed_round_trip(self):
        token = encode_token(self.credential)
        self.assertIn(':', token)
        self.assertEqual(decode_token(token), self.credential)

    @override_settings(EXAM_TOKEN_SIGNED=True)
    def test_signed_mode_rejects_tampering(self):
        token = encode_token(self.credential)
        forged = encode_token(SessionCredential(exam_id='7', student_id='43', student_code='S1001'))
        payload, signature = token.rsplit(':', 1)
        forged_payload = forged.rsplit(':', 1)[0]
        with self.assertRaises(MalformedToken):
            decode_token(f'{forged_payload}:{signature}')
        with self.assertRaises(MalformedToken):
            decode_token(payload)


class ExamLifecycleTest(TestCase):
    """Explicit lifecycle transitions replace the single activation flag"""

    def setUp(self):
        self.exam = Exam.objects.create(title='Lifecycle')

    def test_new_exam_is_scheduled_and_inactive(self):
        self.assertEqual(self.exam.status, ExamStatus.SCHEDULED)
        self.assertFalse(self.exam.is_active)

    def test_open_then_close(self):
        self.exam.open()
        self.exam.refresh_from_db()
        self.assertTrue(self.exam.is_active)
        self.assertIsNotNone(self.exam.opened_at)

        self.exam.close()
        self.exam.refresh_from_db()
        self.assertFalse(self.exam.is_active)
        self.assertTrue(self.exam.is_closed)
        self.assertIsNotNone(self.exam.closed_at)

    def test_scheduled_cannot_close(self):
        with self.assertRaises(InvalidTransition):
            self.exam.close()
        self.exam.refresh_from_db()
        self.assertEqual(self.exam.status, ExamStatus.SCHEDULED)

    def test_reopen_closed_exam(self):
        self.exam.open()
        self.exam.close()
        self.exam.open()
        self.assertTrue(self.exam.is_active)
        self.assertIsNone(self.exam.closed_at)

    def test_open_exam_cannot_open_again(self):
        self.exam.open()
        with self.assertRaises(InvalidTransition):
            self.exam.open()

    def test_end_time_must_follow_start_time(self):
        with self.assertRaises(DjangoValidationError):
            Exam.objects.create(
                title='Invalid Exam',
                start_time=timezone.now(),
                end_time=timezone.now() - timedelta(hours=1)
            )


class StudentRegistryTest(ExamFixtureMixin, TestCase):
    """Student code lookup"""

    def test_single_match(self):
        match = StudentRegistry.lookup('S1001')
        self.assertFalse(match.is_ambiguous)
        self.assertEqual(match.enrollment, self.enrollment1)

    def test_whitespace_is_trimmed(self):
        match = StudentRegistry.lookup('  S1001\n')
        self.assertEqual(match.enrollment, self.enrollment1)

    def test_case_is_preserved(self):
        with self.assertRaises(NotFound):
            StudentRegistry.lookup('s1001')

    def test_unknown_code(self):
        with self.assertRaises(NotFound):
            StudentRegistry.lookup('NOPE')

    def test_blank_code(self):
        with self.assertRaises(ValidationError):
            StudentRegistry.lookup('   ')

    def test_inactive_exam(self):
        with self.assertRaises(ExamNotActive) as ctx:
            StudentRegistry.lookup('S1002')
        self.assertEqual(ctx.exception.exam_status, ExamStatus.SCHEDULED)
        self.assertEqual(str(ctx.exception.detail), 'Bu sınav henüz aktif değil')

    def test_closed_exam_has_its_own_message(self):
        self.e1.close()
        with self.assertRaises(ExamNotActive) as ctx:
            StudentRegistry.lookup('S1001')
        self.assertEqual(str(ctx.exception.detail), 'Bu sınav sona erdi')

    def test_target_exam_mismatch(self):
        with self.assertRaises(ExamMismatch):
            StudentRegistry.lookup('S1001', exam_id=self.e2.id)

    def test_target_exam_unknown_code(self):
        with self.assertRaises(NotFound):
            StudentRegistry.lookup('NOPE', exam_id=self.e1.id)

    def test_shared_code_returns_all_candidates(self):
        e3 = self.make_exam('E3')
        e4 = self.make_exam('E4')
        student = Student.objects.create(student_number='9', first_name='Ali', last_name='Veli')
        other = Student.objects.create(student_number='10', first_name='Can', last_name='Su')
        self.enroll(e3, student, 'S9')
        self.enroll(e4, other, 'S9')

        match = StudentRegistry.lookup('S9')
        self.assertTrue(match.is_ambiguous)
        self.assertIsNone(match.enrollment)
        self.assertEqual({c.exam_id for c in match.candidates}, {e3.id, e4.id})

        chosen = StudentRegistry.lookup('S9', exam_id=e4.id)
        self.assertEqual(chosen.enrollment.student, other)

    def test_resolve_credential(self):
        credential = SessionCredential.for_enrollment(self.enrollment1)
        self.assertEqual(StudentRegistry.resolve_credential(credential), self.enrollment1)

    def test_resolve_credential_rejects_wrong_student(self):
        credential = SessionCredential(str(self.e1.id), str(self.s2.id), 'S1001')
        with self.assertRaises(ExamMismatch):
            StudentRegistry.resolve_credential(credential)

    def test_ids_beyond_column_range_are_invalid(self):
        with self.assertRaises(ValidationError):
            StudentRegistry.lookup('S1001', exam_id=10 ** 30)
        with self.assertRaises(ValidationError):
            StudentRegistry.resolve_credential(SessionCredential('9' * 30, str(self.s1.id), 'S1001'))

    def test_store_timeout_becomes_store_unavailable(self):
        with patch.object(ExamEnrollment.objects, 'select_related',
                          side_effect=OperationalError('canceling statement due to statement timeout')):
            with self.assertRaises(StoreUnavailable):
                StudentRegistry.lookup('S1001')


class StudentLoginEndpointTest(ExamFixtureMixin, TestCase):
    """POST /sinav-giris/"""

    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.url = reverse('exams:exam_login')

    def test_login_sets_cookie_and_redirects(self):
        response = self.client.post(self.url, {'student_code': 'S1001'})

        self.assertEqual(response.status_code, status.HTTP_302_FOUND)
        self.assertEqual(response['Location'], f'/sinav/{self.e1.id}/')
        cookie = response.cookies[COOKIE]
        self.assertTrue(cookie['httponly'])
        self.assertEqual(cookie['path'], '/')
        self.assertEqual(cookie['samesite'], 'Lax')
        self.assertEqual(
            decode_token(cookie.value),
            SessionCredential(str(self.e1.id), str(self.s1.id), 'S1001'),
        )

    def test_login_accepts_json_and_legacy_field_name(self):
        response = self.client.post(self.url, {'student_code': ' S1001 '}, format='json')
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)

        response = self.client.post(self.url, {'student-code': 'S1001'})
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)

    def test_api_alias(self):
        response = self.client.post(reverse('exams:exam_login_api'), {'student_code': 'S1001'})
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)

    def test_missing_code(self):
        response = self.client.post(self.url, {})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['detail'], 'Öğrenci numarası gerekli')

    def test_unknown_code(self):
        response = self.client.post(self.url, {'student_code': 'S0000'})
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['code'], 'not_found')

    def test_inactive_exam(self):
        response = self.client.post(self.url, {'student_code': 'S1002'})
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)
        self.assertEqual(response.data['detail'], 'Bu sınav henüz aktif değil')
        self.assertNotIn(COOKIE, response.cookies)

    def test_ambiguous_code_lists_candidates(self):
        e3 = self.make_exam('E3')
        e4 = self.make_exam('E4')
        self.enroll(e3, self.s1, 'S9')
        self.enroll(e4, self.s2, 'S9')

        response = self.client.post(self.url, {'student_code': 'S9'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual({c['exam_id'] for c in response.data['candidates']}, {e3.id, e4.id})
        self.assertNotIn(COOKIE, response.cookies)

        response = self.client.post(self.url, {'student_code': 'S9', 'exam_id': e4.id})
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)
        self.assertEqual(response['Location'], f'/sinav/{e4.id}/')

    def test_oversized_exam_id(self):
        response = self.client.post(self.url, {'student_code': 'S1001', 'exam_id': 10 ** 30}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'validation_error')
        self.assertNotIn(COOKIE, response.cookies)

    def test_store_unavailable(self):
        with patch.object(ExamEnrollment.objects, 'select_related', side_effect=OperationalError('timeout')):
            response = self.client.post(self.url, {'student_code': 'S1001'})
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertTrue(response.data['retryable'])
        self.assertNotIn('timeout', response.data['detail'])

    def test_unexpected_error(self):
        with patch.object(StudentRegistry, 'lookup', side_effect=RuntimeError('boom')):
            response = self.client.post(self.url, {'student_code': 'S1001'})
        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertNotIn('boom', response.data['detail'])

    def test_login_page_echoes_reason(self):
        response = self.client.get(self.url, {'error': 'exam-not-active'})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['error'], 'exam-not-active')


class ExamAccessGateTest(ExamFixtureMixin, TestCase):
    """Per-request gate on /sinav/ routes"""

    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.session_url = reverse('exams:exam_session', kwargs={'exam_id': self.e1.id})

    def login(self, code='S1001'):
        response = self.client.post(reverse('exams:exam_login'), {'student_code': code})
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)

    def test_no_token_redirects_to_login(self):
        response = self.client.get(self.session_url)
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)
        self.assertEqual(response['Location'], '/sinav-giris/?error=session-required')

    def test_admitted_with_valid_token(self):
        self.login()
        response = self.client.get(self.session_url)

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['exam']['id'], self.e1.id)
        self.assertEqual(len(response.data['exam']['questions']), 4)
        self.assertNotIn('correct_answer', response.data['exam']['questions'][0])
        self.assertEqual(response.data['student']['name'], 'Ayşe Yılmaz')

    def test_malformed_token_redirects(self):
        self.client.cookies[COOKIE] = 'definitely%not%a%token'
        response = self.client.get(self.session_url)
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)
        self.assertEqual(response['Location'], '/sinav-giris/?error=invalid-session')

    def test_token_for_unknown_enrollment_redirects(self):
        self.client.cookies[COOKIE] = encode_token(
            SessionCredential(str(self.e1.id), str(self.s1.id), 'FORGED')
        )
        response = self.client.get(self.session_url)
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)
        self.assertEqual(response['Location'], '/sinav-giris/?error=invalid-session')

    def test_oversized_exam_id_in_token_redirects(self):
        token = encode_token(SessionCredential('9' * 30, str(self.s1.id), 'S1001'))
        for url in [self.session_url, '/sinav/']:
            # each redirect clears the cookie
            self.client.cookies[COOKIE] = token
            response = self.client.get(url)
            self.assertEqual(response.status_code, status.HTTP_302_FOUND)
            self.assertEqual(response['Location'], '/sinav-giris/?error=invalid-session')

    def test_closing_exam_denies_next_request(self):
        self.login()
        self.assertEqual(self.client.get(self.session_url).status_code, status.HTTP_200_OK)

        Exam.objects.get(id=self.e1.id).close()

        response = self.client.get(self.session_url)
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)
        self.assertEqual(response['Location'], '/sinav-giris/?error=exam-not-active')

    def test_reopening_admits_the_same_token_again(self):
        self.login()
        token = self.client.cookies[COOKIE].value
        exam = Exam.objects.get(id=self.e1.id)
        exam.close()
        self.client.get(self.session_url)
        exam.open()

        self.client.cookies[COOKIE] = token
        self.assertEqual(self.client.get(self.session_url).status_code, status.HTTP_200_OK)

    def test_session_for_other_exam_is_rejected(self):
        e3 = self.make_exam('E3')
        self.login()
        response = self.client.get(reverse('exams:exam_session', kwargs={'exam_id': e3.id}))
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_store_unavailable_is_retryable(self):
        self.login()
        with patch.object(StudentRegistry, 'resolve_credential', side_effect=StoreUnavailable()):
            response = self.client.get(self.session_url)
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertEqual(response['Retry-After'], '5')

    def test_logout_is_reachable_without_session(self):
        response = self.client.post(reverse('exams:exam_logout'))
        self.assertEqual(response.status_code, status.HTTP_200_OK)

    def test_gate_decisions(self):
        gate = ExamAccessGate()

        class FakeRequest:
            def __init__(self, path, cookies):
                self.path = path
                self.COOKIES = cookies

        token = encode_token(SessionCredential.for_enrollment(self.enrollment1))
        path = f'/sinav/{self.e1.id}/'

        decision = gate.evaluate(FakeRequest(path, {}))
        self.assertEqual((decision.state, decision.outcome), (GateState.UNAUTHENTICATED, GateOutcome.REDIRECT))

        decision = gate.evaluate(FakeRequest(path, {COOKIE: token}))
        self.assertEqual((decision.state, decision.outcome), (GateState.ADMITTED, GateOutcome.ADMIT))
        self.assertEqual(decision.enrollment, self.enrollment1)

        self.e1.close()
        decision = gate.evaluate(FakeRequest(path, {COOKIE: token}))
        self.assertEqual((decision.state, decision.outcome), (GateState.DENIED, GateOutcome.REDIRECT))

    def test_gate_does_not_decode_without_token(self):
        gate = ExamAccessGate()

        class FakeRequest:
            path = '/sinav/1/'
            COOKIES = {}

        with patch('exams.middleware.decode_token') as decode:
            gate.evaluate(FakeRequest())
        decode.assert_not_called()


class AnswerSubmissionServiceTest(ExamFixtureMixin, TestCase):
    """Upsert and grading of answers"""

    def submit(self, question, choice, student=None, exam=None):
        return AnswerSubmissionService.submit(
            exam_id=(exam or self.e1).id,
            question_id=question.id,
            student_id=(student or self.s1).id,
            choice=choice,
        )

    def test_correct_answer(self):
        answer, created = self.submit(self.q1, 'B')
        self.assertTrue(created)
        self.assertTrue(answer.is_correct)
        self.assertEqual(answer.student_answer, 'B')

    def test_lowercase_choice_is_normalized(self):
        answer, _ = self.submit(self.q1, ' b ')
        self.assertEqual(answer.student_answer, 'B')
        self.assertTrue(answer.is_correct)

    def test_same_answer_twice_leaves_one_row(self):
        self.submit(self.q1, 'B')
        answer, created = self.submit(self.q1, 'B')

        self.assertFalse(created)
        self.assertEqual(Answer.objects.filter(exam=self.e1, question=self.q1, student=self.s1).count(), 1)
        self.assertTrue(answer.is_correct)

    def test_second_answer_overwrites_first(self):
        self.submit(self.q1, 'B')
        self.submit(self.q1, 'A')

        stored = Answer.objects.get(exam=self.e1, question=self.q1, student=self.s1)
        self.assertEqual(stored.student_answer, 'A')
        self.assertFalse(stored.is_correct)

    def test_correctness_uses_key_at_write_time(self):
        self.submit(self.q1, 'B')
        self.q1.correct_answer = 'C'
        self.q1.save()
        answer, _ = self.submit(self.q1, 'B')
        self.assertFalse(answer.is_correct)

    def test_cleared_answer_is_not_correct(self):
        answer, _ = self.submit(self.q1, None)
        self.assertIsNone(answer.student_answer)
        self.assertFalse(answer.is_correct)

    def test_closed_exam_rejects(self):
        self.e1.close()
        with self.assertRaises(ExamClosed):
            self.submit(self.q1, 'B')
        self.assertFalse(Answer.objects.exists())

    def test_scheduled_exam_rejects(self):
        question = self.e2.questions.first()
        with self.assertRaises(ExamClosed):
            self.submit(question, 'B', student=self.s2, exam=self.e2)

    def test_question_from_other_exam(self):
        question = self.e2.questions.first()
        with self.assertRaises(UnknownQuestion):
            self.submit(question, 'B')

    def test_missing_field(self):
        with self.assertRaises(ValidationError):
            AnswerSubmissionService.submit(exam_id=self.e1.id, question_id=None, student_id=self.s1.id, choice='A')

    def test_invalid_choice(self):
        with self.assertRaises(ValidationError):
            self.submit(self.q1, 'E')

    def test_student_not_enrolled(self):
        with self.assertRaises(ValidationError):
            self.submit(self.q1, 'B', student=self.s2)

    def test_concurrent_first_submission_keeps_one_row(self):
        real_get = QuerySet.get
        raced = []

        def get_after_competing_insert(queryset, *args, **kwargs):
            # A second request inserts the same triple between our lookup and our insert.
            if queryset.model is Answer and not raced:
                raced.append(True)
                Answer.objects.create(
                    exam=self.e1, question=self.q1, student=self.s1,
                    student_answer='A', is_correct=False,
                )
                raise Answer.DoesNotExist()
            return real_get(queryset, *args, **kwargs)

        with patch.object(QuerySet, 'get', get_after_competing_insert):
            answer, created = self.submit(self.q1, 'B')

        self.assertTrue(raced)
        self.assertFalse(created)
        stored = Answer.objects.get(exam=self.e1, question=self.q1, student=self.s1)
        self.assertEqual(Answer.objects.filter(exam=self.e1, question=self.q1, student=self.s1).count(), 1)
        self.assertEqual(stored.id, answer.id)
        self.assertEqual(stored.student_answer, 'B')
        self.assertTrue(stored.is_correct)


class AnswerEndpointTest(ExamFixtureMixin, TestCase):
    """POST /sinav/<exam_id>/answers/"""

    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.client.post(reverse('exams:exam_login'), {'student_code': 'S1001'})
        self.url = reverse('exams:submit_answer', kwargs={'exam_id': self.e1.id})

    def test_submit_then_overwrite(self):
        response = self.client.post(self.url, {'question_id': self.q1.id, 'answer': 'B'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(response.data['is_correct'])

        response = self.client.post(self.url, {'question_id': self.q1.id, 'answer': 'D'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['answer'], 'D')
        self.assertFalse(response.data['is_correct'])
        self.assertEqual(Answer.objects.count(), 1)

    def test_identity_fields_must_match_session(self):
        response = self.client.post(self.url, {
            'question_id': self.q1.id, 'answer': 'B',
            'exam_id': self.e1.id, 'student_code': 'S1001', 'student_id': self.s1.id,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)

        response = self.client.post(self.url, {
            'question_id': self.q1.id, 'answer': 'B', 'student_id': self.s2.id,
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['code'], 'validation_error')

    def test_missing_answer_field(self):
        response = self.client.post(self.url, {'question_id': self.q1.id}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_unknown_question(self):
        question = self.e2.questions.first()
        response = self.client.post(self.url, {'question_id': question.id, 'answer': 'A'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['code'], 'unknown_question')

    def test_submission_after_close_is_redirected(self):
        self.e1.close()
        response = self.client.post(self.url, {'question_id': self.q1.id, 'answer': 'B'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)
        self.assertFalse(Answer.objects.exists())

    def test_store_unavailable_on_write(self):
        with patch.object(Answer.objects, 'update_or_create', side_effect=OperationalError('lock timeout')):
            response = self.client.post(self.url, {'question_id': self.q1.id, 'answer': 'B'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_503_SERVICE_UNAVAILABLE)
        self.assertTrue(response.data['retryable'])


class ScoringServiceTest(ExamFixtureMixin, TestCase):
    """Scores derived from stored answers"""

    def answer(self, student, question, choice, exam=None):
        return Answer.objects.create(
            exam=exam or self.e1,
            question=question,
            student=student,
            student_answer=choice,
            is_correct=question.is_correct_choice(choice),
        )

    def test_compute_score(self):
        self.assertEqual(compute_score(1, 4), 25.0)
        self.assertEqual(compute_score(2, 3), 66.67)
        self.assertEqual(compute_score(0, 0), 0.0)

    def test_no_answers_scores_against_question_count(self):
        result = ScoringService.score_student(self.e1.id, self.s1.id)
        self.assertEqual(result.correct_count, 0)
        self.assertEqual(result.wrong_count, 0)
        self.assertEqual(result.unanswered_count, 4)
        self.assertEqual(result.total_questions, 4)
        self.assertEqual(result.score, 0.0)
        self.assertFalse(result.is_complete)

    def test_partial_answers(self):
        self.answer(self.s1, self.q1, 'B')
        self.answer(self.s1, self.q2, 'A')
        self.answer(self.s1, self.q3, 'D')

        result = ScoringService.score_student(self.e1.id, self.s1.id)
        self.assertEqual(result.correct_count, 2)
        self.assertEqual(result.wrong_count, 1)
        self.assertEqual(result.unanswered_count, 1)
        self.assertEqual(result.score, 50.0)
        self.assertFalse(result.passed)
        self.assertFalse(result.is_complete)

    def test_all_correct_passes(self):
        for question in (self.q1, self.q2, self.q3, self.q4):
            self.answer(self.s1, question, question.correct_answer)
        result = ScoringService.score_student(self.e1.id, self.s1.id)
        self.assertEqual(result.score, 100.0)
        self.assertTrue(result.passed)
        self.assertTrue(result.is_complete)

    def test_cleared_answers_are_not_wrong(self):
        self.answer(self.s1, self.q1, None)
        result = ScoringService.score_student(self.e1.id, self.s1.id)
        self.assertEqual(result.wrong_count, 0)
        self.assertEqual(result.unanswered_count, 4)

    def test_orphaned_answers_are_excluded(self):
        foreign_question = self.e2.questions.first()
        self.answer(self.s1, foreign_question, foreign_question.correct_answer, exam=self.e1)
        self.answer(self.s1, self.q1, 'B')

        result = ScoringService.score_student(self.e1.id, self.s1.id)
        self.assertEqual(result.correct_count, 1)
        self.assertEqual(result.total_questions, 4)

    def test_deleted_question_shrinks_total(self):
        self.answer(self.s1, self.q1, 'B')
        self.answer(self.s1, self.q4, 'D')
        self.q4.delete()

        result = ScoringService.score_student(self.e1.id, self.s1.id)
        self.assertEqual(result.total_questions, 3)
        self.assertEqual(result.correct_count, 1)
        self.assertEqual(result.score, 33.33)

    def test_closed_exam_result_is_complete(self):
        self.e1.close()
        result = ScoringService.score_student(self.e1.id, self.s1.id)
        self.assertTrue(result.is_complete)

    def test_record_result_upserts(self):
        self.answer(self.s1, self.q1, 'B')
        ScoringService.record_result(self.e1.id, self.s1.id)
        self.answer(self.s1, self.q2, 'A')
        ScoringService.record_result(self.e1.id, self.s1.id)

        stored = ExamResult.objects.get(exam=self.e1, student=self.s1)
        self.assertEqual(ExamResult.objects.count(), 1)
        self.assertEqual(stored.correct_count, 2)
        self.assertEqual(stored.total_questions, 4)
        self.assertEqual(float(stored.score), 50.0)

    def test_unknown_exam(self):
        with self.assertRaises(NotFound):
            ScoringService.score_student(99999, self.s1.id)

    def test_review_lists_every_question(self):
        self.answer(self.s1, self.q1, 'B')
        self.answer(self.s1, self.q2, 'C')
        self.answer(self.s1, self.q3, None)

        review = ScoringService.review_answers(self.e1.id, self.s1.id)

        self.assertEqual([r.question_id for r in review], [self.q1.id, self.q2.id, self.q3.id, self.q4.id])
        self.assertEqual((review[0].student_answer, review[0].correct_answer, review[0].is_correct), ('B', 'B', True))
        self.assertEqual((review[1].student_answer, review[1].correct_answer, review[1].is_correct), ('C', 'A', False))
        self.assertEqual((review[2].student_answer, review[2].is_correct), (None, False))
        self.assertEqual((review[3].student_answer, review[3].is_correct), (None, False))
        self.assertEqual(review[0].options['B'], 'b')


class ExamAggregationTest(ExamFixtureMixin, TestCase):
    """Exam-wide statistics for live dashboards"""

    def setUp(self):
        super().setUp()
        self.s3 = Student.objects.create(student_number='1003', first_name='Zeynep', last_name='Demir')
        self.s4 = Student.objects.create(student_number='1004', first_name='Emre', last_name='Çelik')
        self.enroll(self.e1, self.s3, 'S1003')
        self.enroll(self.e1, self.s4, 'S1004')
        submit = AnswerSubmissionService.submit
        # s1: 2 correct, 1 wrong; s3: all correct; s4: nothing
        submit(self.e1.id, self.q1.id, self.s1.id, 'B')
        submit(self.e1.id, self.q2.id, self.s1.id, 'A')
        submit(self.e1.id, self.q3.id, self.s1.id, 'A')
        for question in (self.q1, self.q2, self.q3, self.q4):
            submit(self.e1.id, question.id, self.s3.id, question.correct_answer)

    def test_open_exam_excludes_students_without_answers(self):
        aggregate = ScoringService.aggregate_exam(self.e1.id)

        self.assertEqual(aggregate.total_students, 3)
        self.assertEqual(aggregate.students_started, 2)
        self.assertEqual(aggregate.correct_count, 6)
        self.assertEqual(aggregate.wrong_count, 1)
        self.assertEqual(aggregate.average_score, 75.0)
        self.assertEqual(aggregate.highest_score, 100.0)
        self.assertEqual(aggregate.lowest_score, 50.0)
        self.assertFalse(aggregate.is_complete)
        self.assertEqual(len(aggregate.students), 2)

    def test_student_rows_carry_name_and_progress(self):
        rows = {row['student_id']: row for row in ScoringService.aggregate_exam(self.e1.id).as_dict()['students']}

        self.assertEqual(rows[self.s1.id]['student_name'], 'Ayşe Yılmaz')
        self.assertEqual(rows[self.s1.id]['answered_count'], 3)
        self.assertEqual(rows[self.s3.id]['student_name'], 'Zeynep Demir')
        self.assertEqual(rows[self.s3.id]['answered_count'], 4)

    def test_closed_exam_counts_every_enrolled_student(self):
        self.e1.close()
        aggregate = ScoringService.aggregate_exam(self.e1.id)

        self.assertEqual(aggregate.students_started, 2)
        self.assertEqual(aggregate.average_score, 50.0)
        self.assertEqual(aggregate.lowest_score, 0.0)
        self.assertTrue(aggregate.is_complete)
        self.assertEqual(len(aggregate.students), 3)

    def test_per_question_statistics(self):
        aggregate = ScoringService.aggregate_exam(self.e1.id)
        by_question = {q.question_id: q for q in aggregate.questions}

        self.assertEqual(by_question[self.q1.id].correct_answers, 2)
        self.assertEqual(by_question[self.q3.id].total_answers, 2)
        self.assertEqual(by_question[self.q3.id].wrong_answers, 1)
        self.assertEqual(by_question[self.q4.id].total_answers, 1)

    def test_exam_without_answers(self):
        aggregate = ScoringService.aggregate_exam(self.e2.id)
        self.assertEqual(aggregate.total_students, 1)
        self.assertEqual(aggregate.students_started, 0)
        self.assertEqual(aggregate.average_score, 0.0)
        self.assertEqual(aggregate.highest_score, 0.0)

    def test_recompute_exam_writes_one_result_per_enrollment(self):
        count = ScoringService.recompute_exam(self.e1.id)
        self.assertEqual(count, 3)
        self.assertEqual(ExamResult.objects.filter(exam=self.e1).count(), 3)
        self.assertEqual(float(ExamResult.objects.get(exam=self.e1, student=self.s3).score), 100.0)


class StudentFlowScenarioTest(ExamFixtureMixin, TestCase):
    """Login, answer, finish and read the result"""

    def setUp(self):
        super().setUp()
        self.client = APIClient()

    def test_happy_path(self):
        response = self.client.post(reverse('exams:exam_login'), {'student_code': 'S1001'})
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)
        self.assertIn(COOKIE, response.cookies)

        response = self.client.post(
            reverse('exams:submit_answer', kwargs={'exam_id': self.e1.id}),
            {'question_id': self.q1.id, 'answer': 'B'},
            format='json',
        )
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertTrue(Answer.objects.get(question=self.q1, student=self.s1).is_correct)

        self.assertEqual(ScoringService.score_student(self.e1.id, self.s1.id).correct_count, 1)

        response = self.client.post(reverse('exams:finish_exam', kwargs={'exam_id': self.e1.id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['correct_count'], 1)
        self.assertEqual(response.data['score'], 25.0)
        self.assertTrue(ExamResult.objects.filter(exam=self.e1, student=self.s1).exists())

    def test_result_readable_after_close(self):
        self.client.post(reverse('exams:exam_login'), {'student_code': 'S1001'})
        AnswerSubmissionService.submit(self.e1.id, self.q1.id, self.s1.id, 'B')
        self.e1.close()

        response = self.client.get(reverse('exams:exam_result', kwargs={'exam_id': self.e1.id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['correct_count'], 1)
        self.assertTrue(response.data['is_complete'])
        self.assertEqual(response.data['student_name'], 'Ayşe Yılmaz')

        questions = response.data['questions']
        self.assertEqual(len(questions), 4)
        self.assertEqual(questions[0]['question_id'], self.q1.id)
        self.assertEqual(questions[0]['student_answer'], 'B')
        self.assertEqual(questions[0]['correct_answer'], 'B')
        self.assertTrue(questions[0]['is_correct'])
        self.assertIsNone(questions[1]['student_answer'])
        self.assertEqual(questions[1]['correct_answer'], 'A')

    def test_result_hides_answer_key_while_open(self):
        self.client.post(reverse('exams:exam_login'), {'student_code': 'S1001'})
        AnswerSubmissionService.submit(self.e1.id, self.q1.id, self.s1.id, 'B')

        response = self.client.get(reverse('exams:exam_result', kwargs={'exam_id': self.e1.id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['correct_count'], 1)
        self.assertNotIn('questions', response.data)

    def test_result_requires_session(self):
        response = self.client.get(reverse('exams:exam_result', kwargs={'exam_id': self.e1.id}))
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)

        self.client.cookies[COOKIE] = 'garbage'
        response = self.client.get(reverse('exams:exam_result', kwargs={'exam_id': self.e1.id}))
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)


class StaffPanelTest(ExamFixtureMixin, TestCase):
    """Staff gate, lifecycle control and live results"""

    def setUp(self):
        super().setUp()
        self.client = APIClient()
        self.instructor = User.objects.create_user(
            username='instructor', password='instructor999', is_staff=True
        )
        self.regular = User.objects.create_user(username='regular', password='regular999')
        self.live_url = reverse('exams:live_results', kwargs={'exam_id': self.e1.id})

    def test_anonymous_is_redirected_to_staff_login(self):
        response = self.client.get(self.live_url)
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)
        self.assertTrue(response['Location'].startswith('/login/'))

    def test_non_staff_is_redirected(self):
        self.client.force_login(self.regular)
        response = self.client.get(self.live_url)
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)

    def test_student_session_does_not_open_panel(self):
        self.client.post(reverse('exams:exam_login'), {'student_code': 'S1001'})
        response = self.client.get(self.live_url)
        self.assertEqual(response.status_code, status.HTTP_302_FOUND)

    def test_staff_login_and_live_results(self):
        response = self.client.post(reverse('exams:staff_login'), {
            'username': 'instructor', 'password': 'instructor999'
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)

        AnswerSubmissionService.submit(self.e1.id, self.q1.id, self.s1.id, 'B')
        response = self.client.get(self.live_url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['students_started'], 1)
        self.assertEqual(response.data['correct_count'], 1)
        self.assertEqual(len(response.data['questions']), 4)

    def test_staff_login_rejects_non_staff(self):
        response = self.client.post(reverse('exams:staff_login'), {
            'username': 'regular', 'password': 'regular999'
        }, format='json')
        self.assertEqual(response.status_code, status.HTTP_403_FORBIDDEN)

    def test_staff_logout_closes_panel(self):
        self.client.force_login(self.instructor)
        self.assertEqual(self.client.get(self.live_url).status_code, status.HTTP_200_OK)
        self.client.post(reverse('exams:staff_logout'))
        self.assertEqual(self.client.get(self.live_url).status_code, status.HTTP_302_FOUND)

    def test_open_and_close(self):
        self.client.force_login(self.instructor)

        response = self.client.post(reverse('exams:open_exam', kwargs={'exam_id': self.e2.id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertTrue(response.data['is_active'])

        response = self.client.post(reverse('exams:close_exam', kwargs={'exam_id': self.e2.id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], ExamStatus.CLOSED)

        response = self.client.post(reverse('exams:close_exam', kwargs={'exam_id': self.e2.id}))
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['code'], 'invalid_transition')

    def test_open_unknown_exam(self):
        self.client.force_login(self.instructor)
        response = self.client.post(reverse('exams:open_exam', kwargs={'exam_id': 99999}))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_student_result_and_recompute(self):
        self.client.force_login(self.instructor)
        AnswerSubmissionService.submit(self.e1.id, self.q2.id, self.s1.id, 'A')

        response = self.client.get(reverse('exams:student_result', kwargs={
            'exam_id': self.e1.id, 'student_id': self.s1.id
        }))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['correct_count'], 1)

        response = self.client.post(reverse('exams:recompute_results', kwargs={'exam_id': self.e1.id}))
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['recomputed'], 1)

    def test_stored_results(self):
        url = reverse('exams:stored_results', kwargs={'exam_id': self.e1.id})
        self.assertEqual(self.client.get(url).status_code, status.HTTP_302_FOUND)

        self.client.force_login(self.instructor)
        self.assertEqual(self.client.get(url).data, [])

        AnswerSubmissionService.submit(self.e1.id, self.q1.id, self.s1.id, 'B')
        ScoringService.record_result(self.e1.id, self.s1.id)

        response = self.client.get(url)
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 1)
        self.assertEqual(response.data[0]['student_id'], self.s1.id)
        self.assertEqual(response.data[0]['score'], 25.0)
        self.assertEqual(response.data[0]['correct_count'], 1)


class ManagementCommandTest(ExamFixtureMixin, TestCase):

    def test_recompute_results(self):
        AnswerSubmissionService.submit(self.e1.id, self.q1.id, self.s1.id, 'B')
        out = StringIO()
        call_command('recompute_results', stdout=out)
        self.assertIn('Recomputed 2 results', out.getvalue())
        self.assertEqual(ExamResult.objects.get(exam=self.e1, student=self.s1).correct_count, 1)

    def test_recompute_results_dry_run(self):
        out = StringIO()
        call_command('recompute_results', '--exam', str(self.e1.id), '--dry-run', stdout=out)
        self.assertIn('DRY RUN', out.getvalue())
        self.assertFalse(ExamResult.objects.exists())

    def test_recompute_unknown_exam(self):
        with self.assertRaises(CommandError):
            call_command('recompute_results', '--exam', '99999', stdout=StringIO())


class SampleDataCommandTest(TestCase):

    def test_create_sample_data(self):
        call_command('create_sample_data', stdout=StringIO())

        self.assertEqual(Exam.objects.count(), 3)
        self.assertTrue(User.objects.get(username='instructor').is_staff)
        self.assertTrue(StudentRegistry.lookup('S1001').is_ambiguous)

        open_exam = Exam.objects.get(status=ExamStatus.OPEN)
        match = StudentRegistry.lookup('S1001', exam_id=open_exam.id)
        self.assertTrue(match.enrollment.exam.is_active)

        scheduled = Exam.objects.get(status=ExamStatus.SCHEDULED)
        with self.assertRaises(ExamNotActive):
            StudentRegistry.lookup('S1001', exam_id=scheduled.id)

    def test_create_sample_data_twice(self):
        call_command('create_sample_data', stdout=StringIO())
        call_command('create_sample_data', stdout=StringIO())

        self.assertEqual(Exam.objects.count(), 3)
        self.assertEqual(Question.objects.count(), 9)
        self.assertEqual(Student.objects.count(), 3)
        self.assertEqual(ExamEnrollment.objects.count(), 9)
