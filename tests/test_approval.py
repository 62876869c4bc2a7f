"""Tests for signed parent approval tokens."""

from dataclasses import replace

import pytest

from conftest import FakeWallClock

from signup_pilot.browser.approval import ApprovalVerifier
from signup_pilot.browser.models import BrowserAction


class TestApprovalVerifier:
    """Issue and verify HMAC approval tokens."""

    def setup_method(self):
        self.clock = FakeWallClock()
        self.verifier = ApprovalVerifier("s3cret", ttl_seconds=900, now=self.clock)

    def test_issued_token_verifies_for_its_actions(self):
        token = self.verifier.issue("att-1", [BrowserAction.PAYMENT, BrowserAction.SUBMIT_FORM])

        assert self.verifier.verify(token, BrowserAction.PAYMENT, "att-1")
        assert self.verifier.verify(token, BrowserAction.SUBMIT_FORM, "att-1")
        assert token.approved_actions == ("payment", "submit_form")

    def test_action_outside_token_is_rejected(self):
        token = self.verifier.issue("att-1", [BrowserAction.SUBMIT_FORM])

        assert not self.verifier.verify(token, BrowserAction.PAYMENT, "att-1")

    def test_widened_token_is_rejected(self):
        token = self.verifier.issue("att-1", [BrowserAction.SUBMIT_FORM])
        widened = replace(token, approved_actions=("payment", "submit_form"))

        assert not self.verifier.verify(widened, BrowserAction.PAYMENT, "att-1")

    def test_token_for_other_attempt_is_rejected(self):
        token = self.verifier.issue("att-1", [BrowserAction.PAYMENT])

        assert not self.verifier.verify(token, BrowserAction.PAYMENT, "att-2")

    def test_expired_token_is_rejected(self):
        token = self.verifier.issue("att-1", [BrowserAction.PAYMENT])
        self.clock.advance(901)

        assert not self.verifier.verify(token, BrowserAction.PAYMENT, "att-1")

    def test_token_from_another_secret_is_rejected(self):
        other = ApprovalVerifier("different", now=self.clock)
        token = other.issue("att-1", [BrowserAction.PAYMENT])

        assert not self.verifier.verify(token, BrowserAction.PAYMENT, "att-1")

    def test_missing_token_is_rejected(self):
        assert not self.verifier.verify(None, BrowserAction.PAYMENT, "att-1")

    def test_empty_secret_is_refused(self):
        with pytest.raises(ValueError):
            ApprovalVerifier("")
