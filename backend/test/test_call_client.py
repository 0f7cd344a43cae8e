"""통화 클라이언트 CLI 인자/역할 결정 테스트.

사용법:
    cd backend
    uv run pytest test/test_call_client.py
"""

import asyncio

import pytest

from call_client import build_parser, main, resolve_role
from modules.videocall import Role, SignalingRelay

from fakes import FakeBackend, appointment


@pytest.mark.parametrize("argv", [
    ["--appointment", "apt-123", "--dial", "peer-pat"],
    ["--role", "patient", "--dial", "peer-doc"],
    ["--user-id", "pat-1"],
    ["--role", "nurse"],
])
def test_invalid_arguments_exit(argv):
    with pytest.raises(SystemExit) as exited:
        main(argv)
    assert exited.value.code == 2


def test_role_from_explicit_flag():
    args = build_parser().parse_args(["--appointment", "apt-123", "--role", "doctor"])
    assert asyncio.run(resolve_role(args, None)) is Role.CALLER


def test_role_from_appointment_participant():
    relay = SignalingRelay(FakeBackend({"apt-123": appointment()}))
    args = build_parser().parse_args(["--appointment", "apt-123", "--user-id", "pat-1"])
    assert asyncio.run(resolve_role(args, relay)) is Role.CALLEE


def test_manual_mode_role_follows_dial():
    parser = build_parser()
    assert asyncio.run(resolve_role(parser.parse_args(["--dial", "peer-x"]), None)) is Role.CALLER
    assert asyncio.run(resolve_role(parser.parse_args([]), None)) is Role.CALLEE
