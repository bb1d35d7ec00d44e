"""Collections Workflow Engine

This service runs multi-step collections campaigns:
- Enrolls debtors into timed workflows (email, SMS, physical letter, wait)
- Polls for due steps and claims each one exactly once
- Dispatches channel sends and records every attempt in the execution ledger
- Advances, completes or halts enrollments (payment, escalation)
- Correlates asynchronous delivery events back to communication records
"""

__version__ = "1.0.0"
