# ==== SERVICES PACKAGE ==== #

"""
Services package for discount evaluation, application and integrations.

This package contains the pure eligibility evaluator and discount
calculator, the application coordinator that runs the core transaction
and best-effort side effects, and the payment provider, notification and
analytics collaborators it drives.
"""
