"""Fan-out engine for running many prompts against CLI generation backends.

A run is a queue of jobs drained by ``JobScheduler`` with bounded
concurrency. Around that loop sit the pieces that decide *when* a job may
start and what happens after it ends:

- ``RollingWindowRateLimiter`` spaces out job starts to a per-window quota.
- ``RetryController`` turns transient failures into delayed re-queues with
  capped exponential backoff, and everything else into dead letters.
- ``SequenceAllocator`` hands out gapless 1..N numbers to successful jobs
  whose artifacts must be named in order, even though jobs finish in any
  order.
- ``DynamicWorkQueue`` lets completion callbacks push follow-up work into
  the run that is still draining.

``AdaptiveBatchController`` and ``PipelineExecutor`` drive the scheduler in
latency-tuned batches or in ordered stages. There is no persistence: a run
lives in one process and its report is the only record.
"""
