"""
Test Suite for the Run Lifecycle Engine

One module per component: state machine, run store, verification parser,
ledger, executor, recorder, claim coordinator, audit log and config.
"""
