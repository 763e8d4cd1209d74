"""Durable job queue for content generation and publishing.

Why not Celery / RQ / Dramatiq?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
What this package needs beyond "run a function later" is the per-job state
machine around each attempt:

- Claiming with a conditional update, so any number of workers in any number
  of processes share one SQLite file without a broker.
- Failure classification into categories that pick a degradation strategy
  (fallback model, simplified prompt, template content, relaxed validation,
  manual publish) once plain retries are spent.
- Heartbeats and a sweeper that return abandoned work to the queue.
- Operator overrides that are conditional transitions with an audit trail.

A broker would add a service to run while every item above would still live
in custom task code. The store is the single source of truth; workers are
plain threads around a claim, execute, commit loop.
"""
