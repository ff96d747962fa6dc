"""
Bell Dispatch Application Package

Resolves recurring reminder rules into trigger instants, keeps the pending
trigger index, and dispatches due reminders to recipients' push endpoints.
"""
