"""
quote-intake: Public quote-request intake and triage.

Screens anonymous submissions for abuse, verifies the contact e-mail address,
and enriches accepted requests with an AI triage analysis, a budget estimate
and comparable historical quotes.
"""

__version__ = "0.1.0"
