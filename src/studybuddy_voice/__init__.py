"""
StudyBuddy Voice: quota-aware, plan-aware text-to-speech routing.

Decides per utterance whether a student hears the metered premium voice
service or the on-device fallback voice, and keeps an atomic ledger of
premium characters against the student's monthly quota.
"""

__version__ = "0.1.0"
