"""Run orchestration: strategies, locking, queue worker, and CLI controllers."""
