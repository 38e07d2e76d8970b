"""
Request gates for the two protected areas.

ExamAccessGateMiddleware guards the student exam routes with the session
token cookie. StaffGateMiddleware guards the staff panel with Django's
session user. The two share nothing.
"""
import enum
import logging
import re
from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

from django.conf import settings
from django.http import JsonResponse
from django.shortcuts import redirect
from django.utils.deprecation import MiddlewareMixin

from .exceptions import (
    ExamMismatch,
    MalformedToken,
    NotFound,
    StoreUnavailable,
    ValidationError,
    error_payload,
)
from .services import StudentRegistry
from .tokens import SessionCredential, clear_token_cookie, decode_token

logger = logging.getLogger('exams')

# Paths under the exam prefix that must stay reachable without a session.
EXAM_PUBLIC_PATHS = (
    'logout/',
)


class GateState(enum.Enum):
    UNAUTHENTICATED = 'unauthenticated'
    ADMITTED = 'admitted'
    DENIED = 'denied'
    MISMATCHED = 'mismatched'
    UNAVAILABLE = 'unavailable'


class GateOutcome(enum.Enum):
    ADMIT = 'admit'
    REDIRECT = 'redirect'
    REJECT = 'reject'


@dataclass
class GateDecision:
    state: GateState
    outcome: GateOutcome
    reason: str = ''
    credential: Optional[SessionCredential] = None
    enrollment: object = None


class ExamAccessGate:
    """
    Decides whether a request may enter an exam route.

    No token or an unreadable token sends the student back to login, as does
    an exam that is no longer open. A valid session presented on another
    exam's URL is rejected outright.
    """

    def __init__(self, prefix=None):
        self.prefix = prefix or settings.EXAM_PATH_PREFIX
        self.exam_id_pattern = re.compile(r'^' + re.escape(self.prefix) + r'(?P<exam_id>\d+)(/|$)')

    def protects(self, path):
        if not path.startswith(self.prefix):
            return False
        rest = path[len(self.prefix):]
        return not any(rest.startswith(p) for p in EXAM_PUBLIC_PATHS)

    def path_exam_id(self, path):
        match = self.exam_id_pattern.match(path)
        return match.group('exam_id') if match else None

    def evaluate(self, request) -> GateDecision:
        raw = request.COOKIES.get(settings.EXAM_TOKEN_COOKIE_NAME)
        if not raw:
            return GateDecision(GateState.UNAUTHENTICATED, GateOutcome.REDIRECT, 'session-required')

        try:
            credential = decode_token(raw)
        except MalformedToken:
            return GateDecision(GateState.UNAUTHENTICATED, GateOutcome.REDIRECT, 'invalid-session')

        try:
            enrollment = StudentRegistry.resolve_credential(credential)
        except (NotFound, ExamMismatch, ValidationError):
            return GateDecision(GateState.UNAUTHENTICATED, GateOutcome.REDIRECT, 'invalid-session', credential)
        except StoreUnavailable:
            return GateDecision(GateState.UNAVAILABLE, GateOutcome.REJECT, 'store-unavailable', credential)

        if not enrollment.exam.is_active:
            return GateDecision(GateState.DENIED, GateOutcome.REDIRECT, 'exam-not-active', credential, enrollment)

        path_exam = self.path_exam_id(request.path)
        if path_exam is not None and int(path_exam) != enrollment.exam_id:
            return GateDecision(GateState.MISMATCHED, GateOutcome.REJECT, 'exam-mismatch', credential, enrollment)

        return GateDecision(GateState.ADMITTED, GateOutcome.ADMIT, '', credential, enrollment)


def login_redirect(reason):
    url = settings.EXAM_LOGIN_URL
    if reason:
        url = f"{url}?{urlencode({'error': reason})}"
    return clear_token_cookie(redirect(url))


class ExamAccessGateMiddleware(MiddlewareMixin):
    """Runs the exam gate on every request under the exam prefix; nothing is cached."""

    def __init__(self, get_response):
        super().__init__(get_response)
        self.gate = ExamAccessGate()

    def process_request(self, request):
        path = request.path or '/'
        if not self.gate.protects(path):
            return None

        decision = self.gate.evaluate(request)

        if decision.outcome == GateOutcome.ADMIT:
            request.exam_credential = decision.credential
            request.exam_enrollment = decision.enrollment
            return None

        if decision.outcome == GateOutcome.REDIRECT:
            logger.info(f"Exam gate redirect for {path}: {decision.reason}")
            return login_redirect(decision.reason)

        if decision.state == GateState.UNAVAILABLE:
            exc = StoreUnavailable()
            response = JsonResponse(error_payload(exc), status=exc.status_code)
            response['Retry-After'] = '5'
            return response

        logger.warning(
            f"Exam gate rejected {path} for student {decision.credential.student_id} "
            f"holding a session for exam {decision.credential.exam_id}"
        )
        return JsonResponse(
            {'detail': 'Bu sınava erişim yetkiniz yok', 'code': decision.reason},
            status=403,
        )


def _is_staff(user):
    return bool(user is not None and user.is_authenticated and user.is_staff)


class StaffGateMiddleware(MiddlewareMixin):
    """Send anyone without a staff session under the panel prefix to the staff login."""

    def process_request(self, request):
        path = request.path or '/'
        if not path.startswith(settings.STAFF_PATH_PREFIX):
            return None
        if _is_staff(getattr(request, 'user', None)):
            return None
        logger.info(f"Staff gate redirect for {path}")
        return redirect(f"{settings.LOGIN_URL}?{urlencode({'next': path})}")
