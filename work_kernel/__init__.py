"""
Work Request Kernel

Lifecycle and approval-workflow core for maintenance work requests:
- Status state machine with explicit legal edges
- Sequential approval chains, one per submission
- Optimistic concurrency via compare-and-swap on a version counter
- Append-only decision, delegation and status-history records
- Soft deletion only

Invariant labels used across the packages:
    WR-1  Legal status edges come only from WORK_REQUEST_TRANSITIONS.
    WR-2  version starts at 1 and grows by exactly one per write.
    WR-3  CANCELLED and REJECTED need a non-blank reason.
    AP-1  Only the current pending step accepts a decision, at most once.
    AP-2  The current step is the lowest-position pending step.
    AP-3  One chain per submission; decisions never leak across chains.
    AP-4  The chain plan is a pure function of the request and policy.
"""

__version__ = "0.1.0"
