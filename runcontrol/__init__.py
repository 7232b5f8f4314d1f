"""
Run Control Module

Lifecycle engine for runs executed by autonomous and human agents.
Tracks each run from proposal through approval, execution, verification
and completion, with a shared file store as the only coordination medium.

Components:
- run_store: one JSON record per run, mtime-based optimistic versioning
- state_machine: hierarchical run states and validated transitions
- verification_parser: <verification> block dialects -> check definitions
- check_executor: sequential shell execution under a hard timeout
- verification_ledger: append-only events, pure status derivation
- verification_recorder: record pass/fail/manual results, auto-transitions
- claim_coordinator: expiring claims, file-overlap conflicts, claim GC
- audit_log: append-only JSONL forensics trail
- config: YAML + environment configuration and engine wiring
"""

__version__ = "0.4.0"
