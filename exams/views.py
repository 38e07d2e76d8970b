import logging

from django.conf import settings
from django.contrib.auth import authenticate, login, logout
from django.http import HttpResponseRedirect
from django.shortcuts import get_object_or_404
from django.views.decorators.cache import never_cache
from drf_yasg import openapi
from drf_yasg.utils import swagger_auto_schema
from rest_framework import status
from rest_framework.decorators import (
    api_view,
    authentication_classes,
    permission_classes,
    throttle_classes,
)
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import AnonRateThrottle

from .exceptions import ExamAccessError, StoreUnavailable, ValidationError, error_payload
from .middleware import login_redirect
from .models import Answer, Exam, ExamResult
from .serializers import (
    AnswerSerializer,
    AnswerSubmissionSerializer,
    CandidateListSerializer,
    ErrorResponseSerializer,
    ExamAggregateSerializer,
    ExamCandidateSerializer,
    ExamSessionSerializer,
    ExamResultSerializer,
    ExamStatusSerializer,
    StaffLoginSerializer,
    StudentLoginSerializer,
    StudentResultSerializer,
    StudentScoreSerializer,
)
from .services import (
    AnswerSubmissionService,
    ScoringService,
    StudentRegistry,
    mask_code,
)
from .store import store_guard
from .tokens import SessionCredential, clear_token_cookie, decode_token, set_token_cookie

logger = logging.getLogger('exams')

LOGIN_ERROR_MESSAGES = {
    'session-required': 'Sınava girmek için öğrenci numaranızla giriş yapın',
    'invalid-session': 'Oturumunuz geçersiz, lütfen tekrar giriş yapın',
    'exam-not-active': 'Sınav şu anda aktif değil',
}


class StudentLoginThrottle(AnonRateThrottle):
    """Brute-force guard on student code guessing"""
    scope = 'exam_login'


def _error_response(exc):
    response = Response(error_payload(exc), status=exc.status_code)
    if exc.retryable:
        response['Retry-After'] = '5'
    return response


@swagger_auto_schema(
    method='post',
    operation_description="Log a student in with a per-exam student code. On success redirects to the exam "
                          "and sets the session token cookie. A code shared by several exams returns the "
                          "candidate exams for selection.",
    request_body=StudentLoginSerializer,
    responses={
        302: openapi.Response('Redirect to the exam with the session cookie set'),
        200: openapi.Response('Code belongs to several exams', CandidateListSerializer),
        400: openapi.Response('Missing student code', ErrorResponseSerializer),
        403: openapi.Response('Exam not active', ErrorResponseSerializer),
        404: openapi.Response('Student code not found', ErrorResponseSerializer),
        500: openapi.Response('Unexpected error', ErrorResponseSerializer),
    },
)
@api_view(['GET', 'POST'])
@authentication_classes([])
@permission_classes([AllowAny])
@throttle_classes([StudentLoginThrottle])
@never_cache
def exam_login(request):
    if request.method == 'GET':
        reason = request.query_params.get('error', '')
        return Response({
            'detail': LOGIN_ERROR_MESSAGES.get(reason, 'Sınava giriş için öğrenci numaranızı girin'),
            'error': reason or None,
        })

    serializer = StudentLoginSerializer(data=request.data)
    if not serializer.is_valid():
        return _error_response(ValidationError())
    data = serializer.validated_data
    code = data.get('student_code', '')
    if not code:
        return _error_response(ValidationError('Öğrenci numarası gerekli'))

    try:
        match = StudentRegistry.lookup(code, data.get('exam_id'))
    except ExamAccessError as e:
        logger.warning(f"Student login failed for code {mask_code(code)}: {e.get_codes()}")
        return _error_response(e)
    except Exception:
        logger.exception(f"Unexpected error during student login for code {mask_code(code)}")
        return Response(
            {'detail': 'Giriş yapılırken bir hata oluştu', 'code': 'error'},
            status=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    if match.is_ambiguous:
        return Response({
            'detail': 'Bu öğrenci numarası birden fazla sınava kayıtlı, lütfen sınav seçin',
            'candidates': ExamCandidateSerializer(match.candidates, many=True).data,
        })

    enrollment = match.enrollment
    response = HttpResponseRedirect(f"{settings.EXAM_PATH_PREFIX}{enrollment.exam_id}/")
    set_token_cookie(response, SessionCredential.for_enrollment(enrollment))
    logger.info(f"Session issued for exam {enrollment.exam_id}, student {enrollment.student_id}")
    return response


@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def exam_logout(request):
    return clear_token_cookie(Response({'detail': 'Oturum kapatıldı'}))


@api_view(['GET'])
@authentication_classes([])
@permission_classes([AllowAny])
@never_cache
def exam_session(request, exam_id):
    """Exam and questions for the admitted student, without answer keys."""
    enrollment = request.exam_enrollment
    with store_guard('exam_session'):
        exam = Exam.objects.prefetch_related('questions').get(id=enrollment.exam_id)
        answers = dict(
            Answer.objects.filter(exam=exam, student_id=enrollment.student_id)
            .values_list('question_id', 'student_answer')
        )
        data = ExamSessionSerializer(exam).data
    return Response({
        'exam': data,
        'student': {
            'id': enrollment.student_id,
            'name': enrollment.student.full_name,
            'student_code': enrollment.student_code,
        },
        'answers': {str(k): v for k, v in answers.items()},
    })


@swagger_auto_schema(
    method='post',
    operation_description="Store or overwrite the admitted student's answer to one question.",
    request_body=AnswerSubmissionSerializer,
    responses={
        201: openapi.Response('Answer stored', AnswerSerializer),
        200: openapi.Response('Earlier answer overwritten', AnswerSerializer),
        400: openapi.Response('Missing or invalid field', ErrorResponseSerializer),
        403: openapi.Response('Exam closed', ErrorResponseSerializer),
        404: openapi.Response('Question does not belong to the exam', ErrorResponseSerializer),
        503: openapi.Response('Store unavailable, retry', ErrorResponseSerializer),
    },
)
@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def submit_answer(request, exam_id):
    credential = request.exam_credential
    serializer = AnswerSubmissionSerializer(data=request.data)
    if not serializer.is_valid():
        raise ValidationError()
    data = serializer.validated_data

    if 'exam_id' in data and data['exam_id'] != exam_id:
        raise ValidationError('Sınav bilgisi oturumla uyuşmuyor')
    if 'student_id' in data and str(data['student_id']) != credential.student_id:
        raise ValidationError('Öğrenci bilgisi oturumla uyuşmuyor')
    if 'student_code' in data and data['student_code'] != credential.student_code:
        raise ValidationError('Öğrenci bilgisi oturumla uyuşmuyor')

    answer, created = AnswerSubmissionService.submit(
        exam_id=exam_id,
        question_id=data['question_id'],
        student_id=credential.student_id,
        choice=data['answer'],
    )
    return Response(
        AnswerSerializer(answer).data,
        status=status.HTTP_201_CREATED if created else status.HTTP_200_OK,
    )


@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def finish_exam(request, exam_id):
    """Record the admitted student's result from their answers and return it."""
    credential = request.exam_credential
    result = ScoringService.record_result(exam_id, credential.student_id)
    logger.info(f"Exam {exam_id} finished by student {credential.student_id}")
    return Response(StudentScoreSerializer(result.as_dict()).data)


@api_view(['GET'])
@authentication_classes([])
@permission_classes([AllowAny])
@never_cache
def exam_result(request, exam_id):
    """
    Completion screen for a student. Lives outside the exam prefix so the
    result stays readable after the exam closes; the session still has to
    resolve to an enrollment in this exam.
    """
    raw = request.COOKIES.get(settings.EXAM_TOKEN_COOKIE_NAME)
    if not raw:
        return login_redirect('session-required')
    try:
        credential = decode_token(raw)
        enrollment = StudentRegistry.resolve_credential(credential)
    except StoreUnavailable:
        raise
    except ExamAccessError:
        return login_redirect('invalid-session')

    if enrollment.exam_id != exam_id:
        return Response(
            {'detail': 'Bu sınava erişim yetkiniz yok', 'code': 'exam-mismatch'},
            status=status.HTTP_403_FORBIDDEN,
        )
    result = ScoringService.score_student(exam_id, enrollment.student_id)
    data = result.as_dict()
    data['student_name'] = enrollment.student.full_name
    if enrollment.exam.is_closed:
        review = ScoringService.review_answers(exam_id, enrollment.student_id)
        data['questions'] = [vars(q) for q in review]
    return Response(StudentResultSerializer(data).data)


# Staff session provider

@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def staff_login(request):
    serializer = StaffLoginSerializer(data=request.data)
    if not serializer.is_valid():
        return Response({'detail': 'Kullanıcı adı ve şifre gerekli'}, status=status.HTTP_400_BAD_REQUEST)
    user = authenticate(request, **serializer.validated_data)
    if user is None or not user.is_staff:
        logger.warning(f"Staff login failed for {serializer.validated_data['username']}")
        return Response({'detail': 'Geçersiz kullanıcı bilgileri'}, status=status.HTTP_403_FORBIDDEN)
    login(request, user)
    logger.info(f"Staff user {user.id} logged in")
    return Response({'detail': 'Giriş başarılı'})


@api_view(['POST'])
@permission_classes([AllowAny])
def staff_logout(request):
    logout(request)
    return Response({'detail': 'Çıkış yapıldı'})


def _forbid_non_staff(request):
    if not request.user.is_staff:
        logger.warning(f"Unauthorized staff endpoint access by user {request.user.id}")
        return Response({"detail": "Unauthorized"}, status=status.HTTP_403_FORBIDDEN)
    return None


@swagger_auto_schema(
    method='post',
    operation_description="Open an exam (scheduled -> open, or reopen a closed exam). Staff only.",
    responses={
        200: openapi.Response('Exam opened', ExamStatusSerializer),
        409: openapi.Response('Transition not allowed', ErrorResponseSerializer),
    },
)
@api_view(['POST'])
@permission_classes([IsAuthenticated])
def open_exam(request, exam_id):
    denied = _forbid_non_staff(request)
    if denied:
        return denied
    exam = get_object_or_404(Exam, id=exam_id)
    exam.open()
    logger.info(f"Exam {exam_id} opened by staff user {request.user.id}")
    return Response(ExamStatusSerializer(exam).data)


@swagger_auto_schema(
    method='post',
    operation_description="Close an open exam. Staff only.",
    responses={
        200: openapi.Response('Exam closed', ExamStatusSerializer),
        409: openapi.Response('Transition not allowed', ErrorResponseSerializer),
    },
)
@api_view(['POST'])
@permission_classes([IsAuthenticated])
def close_exam(request, exam_id):
    denied = _forbid_non_staff(request)
    if denied:
        return denied
    exam = get_object_or_404(Exam, id=exam_id)
    exam.close()
    logger.info(f"Exam {exam_id} closed by staff user {request.user.id}")
    return Response(ExamStatusSerializer(exam).data)


@swagger_auto_schema(
    method='get',
    operation_description="Live exam-wide results: averages, per-question and per-student statistics.",
    responses={200: openapi.Response('Aggregate', ExamAggregateSerializer)},
)
@api_view(['GET'])
@permission_classes([IsAuthenticated])
@never_cache
def live_results(request, exam_id):
    denied = _forbid_non_staff(request)
    if denied:
        return denied
    aggregate = ScoringService.aggregate_exam(exam_id)
    return Response(ExamAggregateSerializer(aggregate.as_dict()).data)


@api_view(['GET'])
@permission_classes([IsAuthenticated])
def student_result(request, exam_id, student_id):
    denied = _forbid_non_staff(request)
    if denied:
        return denied
    result = ScoringService.score_student(exam_id, student_id)
    return Response(StudentScoreSerializer(result.as_dict()).data)


@swagger_auto_schema(
    method='get',
    operation_description="Stored result rows of an exam as written by the last recompute or finish. Staff only.",
    responses={200: openapi.Response('Stored results', ExamResultSerializer(many=True))},
)
@api_view(['GET'])
@permission_classes([IsAuthenticated])
def stored_results(request, exam_id):
    denied = _forbid_non_staff(request)
    if denied:
        return denied
    exam = get_object_or_404(Exam, id=exam_id)
    with store_guard('stored_results'):
        results = list(ExamResult.objects.filter(exam=exam).order_by('-score', 'student_id'))
    return Response(ExamResultSerializer(results, many=True).data)


@api_view(['POST'])
@permission_classes([IsAuthenticated])
def recompute_results(request, exam_id):
    denied = _forbid_non_staff(request)
    if denied:
        return denied
    count = ScoringService.recompute_exam(exam_id)
    logger.info(f"Recomputed {count} results for exam {exam_id} by staff user {request.user.id}")
    return Response({'detail': f"{count} sonuç yeniden hesaplandı", 'recomputed': count})


@api_view(['GET'])
@permission_classes([AllowAny])
def health_check(request):
    return Response({
        'status': 'healthy',
        'service': 'Exam Portal API',
        'version': '1.0.0'
    })
