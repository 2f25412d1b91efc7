# ==== BUSINESS LOGIC PACKAGE ==== #

"""
Business logic package for discount domain types and rules.

This package contains the rule, invoice and application snapshots shared
by the evaluator and coordinator, the per-rule-type condition models, and
the error taxonomy surfaced by the apply workflow.
"""
