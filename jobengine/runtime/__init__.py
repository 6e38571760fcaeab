"""Runtime orchestration (job runner, executors, background worker).

This layer is responsible for:
- claiming due jobs from SQLite
- dispatching them to the executor registered for their kind
- settling each job as completed, failed or completed with a scheduled continuation

It should remain independent from the HTTP layer (`jobengine/api`), so both scripts and the API
can reuse the same execution logic.
"""
