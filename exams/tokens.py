"""
Session token codec for student exam sessions.

A token is the URL-safe base64 form of a compact JSON object::

    {"examId": "...", "studentId": "...", "studentCode": "..."}

Nothing is stored server side; the gate re-derives the enrollment from these
fields on every request. With ``EXAM_TOKEN_SIGNED`` enabled the encoded payload
carries an HMAC signature that is verified before any field is read.
"""
import base64
import binascii
import json
from dataclasses import dataclass

from django.conf import settings
from django.core import signing

from .exceptions import MalformedToken

PREFIX_MARKER = 'base64-'
SIGNING_SALT = 'exams.session-token'
REQUIRED_FIELDS = ('examId', 'studentId', 'studentCode')


@dataclass(frozen=True)
class SessionCredential:
    exam_id: str
    student_id: str
    student_code: str

    @classmethod
    def for_enrollment(cls, enrollment):
        return cls(
            exam_id=str(enrollment.exam_id),
            student_id=str(enrollment.student_id),
            student_code=enrollment.student_code,
        )

    def to_payload(self):
        return {
            'examId': self.exam_id,
            'studentId': self.student_id,
            'studentCode': self.student_code,
        }


def _signer():
    return signing.Signer(salt=SIGNING_SALT)


def encode_token(credential: SessionCredential) -> str:
    raw = json.dumps(credential.to_payload(), separators=(',', ':'), ensure_ascii=False)
    token = base64.urlsafe_b64encode(raw.encode('utf-8')).decode('ascii').rstrip('=')
    if getattr(settings, 'EXAM_TOKEN_SIGNED', False):
        token = _signer().sign(token)
    return token


def _b64_json(value: str):
    padded = value + '=' * (-len(value) % 4)
    data = base64.b64decode(padded.encode('ascii'), altchars=b'-_', validate=True)
    return json.loads(data.decode('utf-8'))


def _parse(value: str):
    # Transport layers may or may not have applied the base64 step.
    try:
        return _b64_json(value)
    except (binascii.Error, ValueError, UnicodeError):
        pass
    try:
        return json.loads(value)
    except ValueError:
        raise MalformedToken()


def _field(payload, name):
    value = payload.get(name)
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise MalformedToken()
    value = str(value)
    if not value.strip():
        raise MalformedToken()
    return value


def decode_token(raw) -> SessionCredential:
    if not isinstance(raw, str) or not raw.strip():
        raise MalformedToken()
    value = raw.strip()
    if value.startswith(PREFIX_MARKER):
        value = value[len(PREFIX_MARKER):]

    if getattr(settings, 'EXAM_TOKEN_SIGNED', False):
        try:
            value = _signer().unsign(value)
        except signing.BadSignature:
            raise MalformedToken()

    payload = _parse(value)
    if not isinstance(payload, dict):
        raise MalformedToken()
    exam_id, student_id, student_code = (_field(payload, name) for name in REQUIRED_FIELDS)
    return SessionCredential(exam_id=exam_id, student_id=student_id, student_code=student_code)


def set_token_cookie(response, credential: SessionCredential):
    response.set_cookie(
        settings.EXAM_TOKEN_COOKIE_NAME,
        encode_token(credential),
        max_age=settings.EXAM_TOKEN_MAX_AGE,
        path='/',
        httponly=True,
        secure=not settings.DEBUG,
        samesite='Lax',
    )
    return response


def clear_token_cookie(response):
    response.delete_cookie(settings.EXAM_TOKEN_COOKIE_NAME, path='/', samesite='Lax')
    return response
