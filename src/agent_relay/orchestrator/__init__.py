"""Concurrent streaming orchestration for remote agent runs.

Why not a task queue (Celery / Arq) or ``asyncio.gather`` at each call site?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Every run is short-lived and owned by a single caller that is watching the
outbound event stream.  The parts that need care are not queuing but:

- Normalizing heterogeneous backend event streams (steps, live-view URLs,
  terminal results) into one event vocabulary.
- Classifying failures into rate-limited / transient / fatal and deciding
  between waiting on the same backend candidate or switching to the next.
- Keeping per-task event order while many tasks share one outbound sink,
  and closing that sink exactly once even when the consumer disconnects.
- Cancelling a run without losing the results that already arrived.

A broker would add an operational dependency for an in-process, per-request
fan-out.  A single asyncio event loop with a bounded limiter covers it.
"""
