"""Clip pipeline execution layer.

Takes a ClipRequest and drives it through acquisition, translation and
document generation, checkpointing progress so a restarted host can pick
the job back up.

Architecture (bottom-up):
- errors: Error taxonomy and normalization to {code, message}
- settings: Environment-driven pipeline configuration
- db / storage: Host persistence (SQLite/Postgres key-value, or in-memory)
- retry: Bounded retry with a delay schedule for upstream calls
- selector_cache: Per-site CSS selector cache with reactive invalidation
- chunking: Oversized-HTML splitting and deterministic result merging
- job_manager: Singleton job state machine, checkpoints, heartbeat
- strategies: Content acquisition (selector, AI extract, no-AI heuristic)
- stats: Saved-clip counters and history
- pipeline: Orchestrator wiring the stages together
"""
