"""Service layer — business logic and transaction ownership.

Blueprints stay thin; every commit happens in a service function.
"""
