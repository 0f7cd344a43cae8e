"""화상 진료 통화 클라이언트 CLI.

예약(공유 통화 레코드)으로 진료실에 입장하거나, 세션 없이 상대 식별자로 직접 통화합니다.

Usage:
    # 예약으로 입장 (의사는 환자 식별자가 기록되면 자동 발신, 환자는 자동 응답)
    python call_client.py --appointment apt-123 --role doctor
    python call_client.py --appointment apt-123 --user-id patient-42

    # 수동 모드
    python call_client.py                         # 식별자 출력 후 수신 대기
    python call_client.py --dial <상대 식별자>     # 직접 발신

Commands (실행 중 입력):
    m: 마이크 켜기/끄기
    c: 카메라 켜기/끄기
    h: 통화 종료
"""

import sys
import asyncio
import argparse
import logging
import os
from typing import Optional

from modules.videocall import (
    BrokerPeerTransport,
    CallStatus,
    DisplaySurface,
    HttpDataBackend,
    Role,
    SignalingReadError,
    SignalingRelay,
    VideoCallSession,
    signaling_config,
)

logger = logging.getLogger("call_client")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Clinic video consultation call client")
    parser.add_argument("--server", default=signaling_config.SERVER_URL, help="시그널링 서버 주소")
    parser.add_argument("--token", default=signaling_config.API_TOKEN, help="API 토큰")
    parser.add_argument("--appointment", help="예약 ID (공유 통화 레코드)")
    parser.add_argument("--role", choices=[r.value for r in Role], help="통화 역할 (doctor=발신, patient=수신)")
    parser.add_argument("--user-id", help="사용자 ID (예약의 doctor_id/patient_id로 역할 결정)")
    parser.add_argument("--dial", metavar="IDENTITY", help="수동 모드: 상대 식별자로 발신")
    parser.add_argument("--record", metavar="FILE", help="원격 스트림 녹화 파일 (예: remote.mp4)")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"), help="로그 레벨")
    return parser


async def resolve_role(args, relay: Optional[SignalingRelay]) -> Role:
    if args.role:
        return Role(args.role)
    if args.user_id and relay is not None:
        record = await relay.read_session(args.appointment)
        return Role.for_user(record, args.user_id)
    return Role.CALLER if args.dial else Role.CALLEE


def watch_commands(session: VideoCallSession) -> bool:
    """표준 입력 명령을 등록합니다. 지원하지 않는 플랫폼이면 False."""
    loop = asyncio.get_running_loop()

    def on_input():
        command = sys.stdin.readline().strip().lower()
        if command == "m":
            enabled = session.toggle_mic()
            print(f"마이크: {'켜짐' if enabled else '꺼짐'}")
        elif command == "c":
            enabled = session.toggle_camera()
            print(f"카메라: {'켜짐' if enabled else '꺼짐'}")
        elif command == "h":
            loop.create_task(session.hang_up())

    try:
        loop.add_reader(sys.stdin, on_input)
    except (NotImplementedError, ValueError, OSError):
        return False
    return True


async def run(args) -> int:
    relay = SignalingRelay(HttpDataBackend(args.server, args.token)) if args.appointment else None

    try:
        role = await resolve_role(args, relay)
    except (SignalingReadError, ValueError) as e:
        logger.error(f"역할 결정 실패: {e}")
        return 2

    session = VideoCallSession(
        role,
        session_id=args.appointment,
        transport=BrokerPeerTransport(args.server, args.token),
        relay=relay,
        remote_surface=DisplaySurface("remote", record_to=args.record),
        on_status=lambda status: print(f"[{role.value}] {status}"),
    )

    async with session:
        identity = session.identity_manager.identity
        if identity:
            print(f"내 식별자: {identity}")
        if args.dial:
            await session.dial(args.dial)

        watching = watch_commands(session)
        try:
            await session.wait_ended()
        finally:
            if watching:
                asyncio.get_running_loop().remove_reader(sys.stdin)

    return 0 if session.status == CallStatus.CALL_ENDED else 1


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.dial and args.appointment:
        parser.error("--dial은 --appointment 없이 사용합니다")
    if args.dial and args.role == Role.CALLEE.value:
        parser.error("수신자(patient)는 발신할 수 없습니다")
    if args.user_id and not args.appointment:
        parser.error("--user-id는 --appointment와 함께 사용합니다")

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("통화 종료")
        return 0


if __name__ == "__main__":
    sys.exit(main())
