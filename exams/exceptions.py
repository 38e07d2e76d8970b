from rest_framework import status
from rest_framework.exceptions import APIException
from rest_framework.views import exception_handler


class ExamAccessError(APIException):
    """Base class for failures scoped to a single exam request."""
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'İşlem gerçekleştirilemedi'
    default_code = 'exam_error'
    retryable = False


class NotFound(ExamAccessError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Öğrenci numarası bulunamadı'
    default_code = 'not_found'


class ExamMismatch(ExamAccessError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Bu öğrenci numarası seçilen sınava kayıtlı değil'
    default_code = 'exam_mismatch'


class ExamNotActive(ExamAccessError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'Bu sınav henüz aktif değil'
    default_code = 'exam_not_active'

    def __init__(self, detail=None, code=None, exam_status=None):
        super().__init__(detail, code)
        self.exam_status = exam_status


class ExamClosed(ExamAccessError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = 'Sınav kapandığı için cevap kaydedilemedi'
    default_code = 'exam_closed'


class MalformedToken(ExamAccessError):
    status_code = status.HTTP_401_UNAUTHORIZED
    default_detail = 'Oturum bilgisi geçersiz, lütfen tekrar giriş yapın'
    default_code = 'malformed_token'


class ValidationError(ExamAccessError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Eksik ya da hatalı bilgi gönderildi'
    default_code = 'validation_error'


class UnknownQuestion(ExamAccessError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = 'Soru bu sınava ait değil'
    default_code = 'unknown_question'


class InvalidTransition(ExamAccessError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Sınav durumu bu işleme izin vermiyor'
    default_code = 'invalid_transition'


class StoreUnavailable(ExamAccessError):
    """Transient failure talking to the database. Safe to retry."""
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = 'Sistem şu anda yanıt veremiyor, lütfen tekrar deneyin'
    default_code = 'store_unavailable'
    retryable = True


def error_payload(exc):
    payload = {'detail': str(exc.detail), 'code': exc.get_codes()}
    if exc.retryable:
        payload['retryable'] = True
    return payload


def exam_exception_handler(exc, context):
    """Render exam errors as {"detail", "code"} and defer everything else to DRF."""
    response = exception_handler(exc, context)
    if response is not None and isinstance(exc, ExamAccessError):
        response.data = error_payload(exc)
        if exc.retryable:
            response['Retry-After'] = '5'
    return response
