"""Operation lifecycle for the analysis service.

Accepts analysis requests from many clients, runs them one at a time in
submission order, survives restarts through a versioned snapshot, and
streams every change to connected observers.

Architecture (bottom-up):
- schemas: Operation, Progress, AnalysisRequest, Snapshot, ServerStatus
- snapshot_store: save/restore the whole queue, re-queue interrupted work
- notifier: fan-out of list, operation and status changes
- queue: ordered operations and admission control
- analyzer: the opaque work unit and its hooks contract
- scheduler: single-slot execution, output storage, completion chaining
- admin: privileged bulk operations (reseed)
- service: wiring and client connection handling
"""
