"""
SmartNotify package initialization.

Conversation notification decision engine: activity monitoring, heuristic
triage, retrieval-augmented inference with deterministic fallback, delivery
policy and feedback-driven preference learning.
"""

# Setup logging configuration on package import
from .utils.logging_config import setup_logging

setup_logging()
