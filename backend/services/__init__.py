"""
PaySys Approvals - Services Package

Workflow registry, transition executor, document store and notifications.
"""
