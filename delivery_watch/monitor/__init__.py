"""Eligibility rules, action ledger and the poll-evaluate-act cycle orchestrator."""
