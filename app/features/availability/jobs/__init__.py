"""
arq job handlers for the availability feature.
"""

from .deadline_job import enforce_prompt_deadline
from .reminder_job import send_prompt_reminder

__all__ = ["enforce_prompt_deadline", "send_prompt_reminder"]
