"""Compliance gate, terms classifiers and rate limiting."""

from signup_pilot.compliance.classifier import (
    AnthropicTermsClassifier,
    ClassifierResult,
    TermsClassifier,
    TrustedProviderClassifier,
    get_classifier,
)
from signup_pilot.compliance.gate import ComplianceGate, parent_explanation
from signup_pilot.compliance.rate_limiter import RateDecision, RateLimiter
from signup_pilot.compliance.robots import RobotsFetcher, RobotsRules, parse_robots
from signup_pilot.compliance.verdict import ComplianceStatus, Verdict

__all__ = [
    "ComplianceGate",
    "ComplianceStatus",
    "Verdict",
    "parent_explanation",
    # Robots
    "RobotsFetcher",
    "RobotsRules",
    "parse_robots",
    # Classifiers
    "TermsClassifier",
    "TrustedProviderClassifier",
    "AnthropicTermsClassifier",
    "ClassifierResult",
    "get_classifier",
    # Rate limiting
    "RateLimiter",
    "RateDecision",
]
