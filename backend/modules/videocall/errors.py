"""화상 통화 예외 모듈.

통화 설정 흐름에서 발생하는 오류 분류입니다. 모든 오류는 자동 복구되지 않으며
상태 문자열로만 사용자에게 노출됩니다.
"""


class VideoCallError(Exception):
    """화상 통화 관련 예외의 기본 클래스."""


class MediaAccessError(VideoCallError):
    """카메라/마이크 접근 실패 (권한 거부 또는 장치 없음)."""


class CallEstablishmentError(VideoCallError):
    """피어 연결 수립 실패 (ICE/협상 실패, 상대 피어 없음)."""


class IdentityRegistrationError(VideoCallError):
    """브로커에서 네트워크 식별자를 발급받지 못함."""


class SignalingError(VideoCallError):
    """공유 통화 레코드 읽기/쓰기 실패."""


class SignalingReadError(SignalingError):
    """공유 통화 레코드 읽기 또는 구독 실패."""


class SignalingWriteError(SignalingError):
    """공유 통화 레코드에 식별자 쓰기 실패."""


class RowNotFoundError(VideoCallError):
    """데이터 백엔드에 요청한 행이 없음."""
