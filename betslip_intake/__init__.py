"""Betslip Intake: Telegram front-end that batches, reviews and commits betting slips."""

__version__ = "0.1.0"
