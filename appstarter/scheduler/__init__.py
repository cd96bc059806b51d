"""
Cron scheduler.

Parses five-field cron expressions and triggers command starts on the
minutes they match.
"""

from .cron import CronParseError, CronSchedule, parse_cron_field
from .service import SchedulerService

__all__ = ["CronParseError", "CronSchedule", "parse_cron_field", "SchedulerService"]
