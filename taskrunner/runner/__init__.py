"""
Job runner components.

- trigger.py: decides which schedules are due
- executor.py: job execution with timeout, retry and overlap protection
- db.py: SQLite outcome log and schedule state
- alerts.py: webhook/Slack/email run notifications
- scheduler.py: the polling loop tying them together
"""
