"""
Core modules for Campaign Credits.

This package contains the credit ledger, task pricing, planning and
the generation pipeline orchestrator.
"""
