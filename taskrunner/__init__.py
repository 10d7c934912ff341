"""
taskrunner - a small scheduled task runner.

Registers named jobs from a JSON config file, fires them on interval/daily/weekly
schedules or on demand, retries failures with backoff and keeps an append-only
run history in SQLite.
"""

__version__ = '0.3.0'
