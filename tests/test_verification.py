"""
tests/test_verification.py -- OTP verification state machine.

Covers partial input, auto-submit and re-arming, the success and failure
transitions, the one-attempt-in-flight rule (a threading.Event holds the
HTTP call open in the worker thread), stale responses after leave(), and the
resend cooldown.
"""

from __future__ import annotations

import asyncio
import threading

import pytest

from auth.verification import RESEND_OTP_ENDPOINT, VERIFY_OTP_ENDPOINT, VerificationMachine, VerificationState
from core.errors import ApiError, InvalidCode, RateLimited
from conftest import auth_payload, make_response

EMAIL = "jane@example.com"


async def _wait_for(predicate, timeout: float = 5.0) -> None:
    """Yield to the loop until predicate() holds (the worker thread has made its call)."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


def _held(gate: threading.Event, response):
    def route():
        gate.wait(timeout=5)
        return response

    return route


@pytest.fixture
def awaiting(machine: VerificationMachine, flows) -> VerificationMachine:
    """A machine that has entered with a fresh pending verification for EMAIL."""
    flows.begin_verification(EMAIL)
    assert machine.enter() is None
    return machine


# ---------------------------------------------------------------------------
# Entry
# ---------------------------------------------------------------------------


class TestEnter:
    def test_nothing_pending_redirects_to_register(self, machine, http):
        assert machine.enter() == "/register"
        assert machine.state == VerificationState.IDLE
        assert http.calls == []

    def test_pending_moves_to_awaiting_code(self, awaiting):
        assert awaiting.state == VerificationState.AWAITING_CODE
        assert awaiting.email == EMAIL
        assert awaiting.code == ""
        assert awaiting.seconds_remaining == 60
        assert not awaiting.resend_enabled

    def test_reentry_restores_remaining_cooldown(self, machine, flows, clock):
        flows.begin_verification(EMAIL)
        clock.advance(45)
        machine.enter()
        assert machine.seconds_remaining == 15

    def test_reentry_after_deadline_enables_resend(self, machine, flows, clock):
        flows.begin_verification(EMAIL)
        clock.advance(120)
        machine.enter()
        assert machine.seconds_remaining == 0
        assert machine.resend_enabled

    def test_input_ignored_while_idle(self, machine, http):
        assert asyncio.run(machine.set_code("123456")) is None
        assert http.calls == []


# ---------------------------------------------------------------------------
# Code entry
# ---------------------------------------------------------------------------


class TestCodeEntry:
    @pytest.mark.parametrize("partial", ["", "1", "12345", "12a34"])
    def test_partial_code_never_submits(self, awaiting, http, partial):
        assert asyncio.run(awaiting.set_code(partial)) is None
        assert http.calls == []
        assert awaiting.state == VerificationState.AWAITING_CODE

    def test_non_digits_stripped(self, awaiting, http):
        asyncio.run(awaiting.set_code("1 2-3"))
        assert awaiting.code == "123"

    def test_paste_longer_than_code_is_capped_and_submitted(self, awaiting, http):
        http.add("POST", VERIFY_OTP_ENDPOINT, payload=auth_payload())
        result = asyncio.run(awaiting.set_code("12345678"))
        assert result.verified
        assert http.calls_to(VERIFY_OTP_ENDPOINT)[0].json == {"email": EMAIL, "otp": "123456"}

    def test_submit_requires_full_code(self, awaiting, http):
        asyncio.run(awaiting.set_code("123"))
        assert asyncio.run(awaiting.submit()) is None
        assert http.calls == []


# ---------------------------------------------------------------------------
# Verification outcome
# ---------------------------------------------------------------------------


class TestVerify:
    def test_success_installs_credential_and_redirects_by_role(
        self, awaiting, http, credentials, pending_store, resolver
    ):
        http.add("POST", VERIFY_OTP_ENDPOINT, payload=auth_payload(role="employer", token="jwt-employer"))
        result = asyncio.run(awaiting.set_code("123456"))

        assert result.verified
        assert result.redirect_to == "/employer/dashboard"
        assert result.user.role == "employer"
        assert awaiting.state == VerificationState.VERIFIED
        assert credentials.get() == "jwt-employer"
        assert pending_store.load() is None
        assert resolver.loading

    @pytest.mark.parametrize(
        ("role", "path"),
        [("job_seeker", "/dashboard"), ("admin", "/admin/dashboard"), (None, "/dashboard"), ("other", "/dashboard")],
    )
    def test_landing_route_per_role(self, awaiting, http, role, path):
        http.add("POST", VERIFY_OTP_ENDPOINT, payload=auth_payload(role=role))
        assert asyncio.run(awaiting.set_code("654321")).redirect_to == path

    def test_rejected_code_keeps_code_and_pending(self, awaiting, http, credentials, pending_store):
        http.add("POST", VERIFY_OTP_ENDPOINT, status=400, payload={"message": "Invalid OTP"})
        result = asyncio.run(awaiting.set_code("111111"))

        assert not result.verified
        assert result.error == "Invalid OTP"
        assert awaiting.state == VerificationState.AWAITING_CODE
        assert awaiting.code == "111111"
        assert isinstance(awaiting.last_error, InvalidCode)
        assert awaiting.last_error.status == 400
        assert credentials.get() is None
        assert pending_store.load().email == EMAIL

    def test_expired_code_message_surfaced(self, awaiting, http):
        http.add("POST", VERIFY_OTP_ENDPOINT, status=400, payload={"message": "OTP has expired"})
        assert asyncio.run(awaiting.set_code("111111")).error == "OTP has expired"

    def test_server_error_is_not_an_invalid_code(self, awaiting, http):
        http.add("POST", VERIFY_OTP_ENDPOINT, status=500, payload={"message": "Verification failed"})
        asyncio.run(awaiting.set_code("111111"))
        assert isinstance(awaiting.last_error, ApiError)
        assert not isinstance(awaiting.last_error, InvalidCode)
        assert awaiting.state == VerificationState.AWAITING_CODE

    def test_full_code_does_not_resubmit_until_rearmed(self, awaiting, http):
        http.add("POST", VERIFY_OTP_ENDPOINT, status=400, payload={"message": "Invalid OTP"})
        http.add("POST", VERIFY_OTP_ENDPOINT, payload=auth_payload())

        async def scenario():
            await awaiting.set_code("111111")
            assert await awaiting.set_code("111111") is None
            await awaiting.set_code("11111")
            return await awaiting.set_code("111112")

        result = asyncio.run(scenario())
        assert result.verified
        assert len(http.calls_to(VERIFY_OTP_ENDPOINT)) == 2

    def test_explicit_submit_after_failure(self, awaiting, http):
        http.add("POST", VERIFY_OTP_ENDPOINT, status=400, payload={"message": "Invalid OTP"})
        http.add("POST", VERIFY_OTP_ENDPOINT, payload=auth_payload())

        async def scenario():
            await awaiting.set_code("111111")
            return await awaiting.submit()

        assert asyncio.run(scenario()).verified


# ---------------------------------------------------------------------------
# One attempt in flight
# ---------------------------------------------------------------------------


class TestInFlight:
    def test_input_during_verifying_is_ignored(self, awaiting, http):
        gate = threading.Event()
        http.add_route("POST", VERIFY_OTP_ENDPOINT, _held(gate, make_response(200, auth_payload())))

        async def scenario():
            first = asyncio.create_task(awaiting.set_code("123456"))
            await _wait_for(lambda: http.calls)
            assert awaiting.state == VerificationState.VERIFYING
            assert await awaiting.set_code("654321") is None
            assert await awaiting.submit() is None
            gate.set()
            return await first

        result = asyncio.run(scenario())
        assert result.verified
        assert len(http.calls_to(VERIFY_OTP_ENDPOINT)) == 1
        assert awaiting.code == "123456"

    def test_response_after_leave_is_discarded(self, awaiting, http, credentials, pending_store):
        gate = threading.Event()
        http.add_route("POST", VERIFY_OTP_ENDPOINT, _held(gate, make_response(200, auth_payload())))

        async def scenario():
            attempt = asyncio.create_task(awaiting.set_code("123456"))
            await _wait_for(lambda: http.calls)
            awaiting.leave()
            gate.set()
            return await attempt

        assert asyncio.run(scenario()) is None
        assert awaiting.state == VerificationState.IDLE
        assert credentials.get() is None
        assert pending_store.load() is not None

    def test_failure_after_leave_is_discarded(self, awaiting, http):
        gate = threading.Event()
        http.add_route("POST", VERIFY_OTP_ENDPOINT, _held(gate, make_response(400, {"message": "Invalid OTP"})))

        async def scenario():
            attempt = asyncio.create_task(awaiting.set_code("123456"))
            await _wait_for(lambda: http.calls)
            awaiting.leave()
            gate.set()
            return await attempt

        assert asyncio.run(scenario()) is None
        assert awaiting.state == VerificationState.IDLE
        assert awaiting.last_error is None


# ---------------------------------------------------------------------------
# Resend cooldown
# ---------------------------------------------------------------------------


class TestResend:
    def test_cooldown_counts_down_to_zero_and_stops(self, awaiting):
        for _ in range(59):
            awaiting.tick()
        assert awaiting.seconds_remaining == 1
        assert not awaiting.resend_enabled
        awaiting.tick()
        assert awaiting.seconds_remaining == 0
        assert awaiting.resend_enabled
        awaiting.tick()
        assert awaiting.seconds_remaining == 0

    def test_resend_while_cooling_down_makes_no_call(self, awaiting, http):
        assert asyncio.run(awaiting.resend()) is False
        assert http.calls == []
        assert awaiting.seconds_remaining == 60

    def test_resend_resets_cooldown_and_persists_deadline(self, awaiting, http, clock, pending_store):
        http.add("POST", RESEND_OTP_ENDPOINT, payload={"message": "New OTP sent to your email"})
        for _ in range(60):
            awaiting.tick()
        clock.advance(60)

        assert asyncio.run(awaiting.resend()) is True
        assert awaiting.seconds_remaining == 60
        assert not awaiting.resend_enabled
        assert http.calls_to(RESEND_OTP_ENDPOINT)[0].json == {"email": EMAIL}
        assert pending_store.load().resend_cooldown_deadline == clock() + 60

    def test_resend_failure_leaves_cooldown_expired(self, awaiting, http):
        http.add("POST", RESEND_OTP_ENDPOINT, status=429, payload={"message": "Please wait 30 seconds"})
        awaiting.seconds_remaining = 0

        assert asyncio.run(awaiting.resend()) is False
        assert isinstance(awaiting.last_error, RateLimited)
        assert awaiting.seconds_remaining == 0
        assert not awaiting.resend_in_flight
        assert awaiting.resend_enabled

    def test_resend_disabled_while_one_is_in_flight(self, awaiting, http):
        gate = threading.Event()
        http.add_route("POST", RESEND_OTP_ENDPOINT, _held(gate, make_response(200, {"message": "sent"})))
        awaiting.seconds_remaining = 0

        async def scenario():
            first = asyncio.create_task(awaiting.resend())
            await _wait_for(lambda: http.calls)
            assert awaiting.resend_in_flight
            assert not awaiting.resend_enabled
            assert await awaiting.resend() is False
            gate.set()
            return await first

        assert asyncio.run(scenario()) is True
        assert len(http.calls_to(RESEND_OTP_ENDPOINT)) == 1

    def test_resend_disabled_when_idle(self, machine):
        machine.seconds_remaining = 0
        assert not machine.resend_enabled

    def test_run_countdown_ticks_once_per_second(self, awaiting, monkeypatch):
        sleeps = []
        real_sleep = asyncio.sleep

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            await real_sleep(0)

        monkeypatch.setattr("auth.verification.asyncio.sleep", fake_sleep)
        awaiting.seconds_remaining = 3
        asyncio.run(awaiting.run_countdown())
        assert sleeps == [1, 1, 1]
        assert awaiting.seconds_remaining == 0

    def test_successful_resend_restarts_countdown(self, awaiting, http, monkeypatch):
        http.add("POST", RESEND_OTP_ENDPOINT, payload={"message": "sent"})
        real_sleep = asyncio.sleep
        sleeps = []

        async def fake_sleep(seconds):
            sleeps.append(seconds)
            await real_sleep(0)

        monkeypatch.setattr("auth.verification.asyncio.sleep", fake_sleep)
        awaiting.seconds_remaining = 0

        async def scenario():
            assert await awaiting.resend() is True
            assert awaiting.countdown_task is not None
            assert not awaiting.resend_enabled
            await awaiting.countdown_task

        asyncio.run(scenario())
        assert len(sleeps) == 60
        assert awaiting.seconds_remaining == 0
        assert awaiting.resend_enabled

    def test_leave_cancels_running_countdown(self, awaiting):
        async def scenario():
            task = awaiting.start_countdown()
            await asyncio.sleep(0)
            awaiting.leave()
            with pytest.raises(asyncio.CancelledError):
                await task
            return awaiting.countdown_task

        assert asyncio.run(scenario()) is None
        assert awaiting.seconds_remaining == 60

    def test_run_countdown_stops_after_leave(self, awaiting):
        awaiting.leave()
        asyncio.run(awaiting.run_countdown())
        assert awaiting.seconds_remaining == 60
