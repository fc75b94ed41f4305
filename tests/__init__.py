"""Test suite for grantflow.

This package contains tests for:
- Field permissions and the editability table
- Attachment reconciliation (types, sizes, cardinality, exclusivity)
- Status transitions and remarks
- The submission orchestrator (concurrency, rollback, collaborator failures)
- Integration scenarios (rejection, reopening, approval)
"""
