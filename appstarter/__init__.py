"""
AppStarter: supervises user-defined external processes.

Commands are started, stopped, watched and restarted by the process manager,
and triggered on five-field cron schedules by the scheduler.
"""

__version__ = "1.0.0"
