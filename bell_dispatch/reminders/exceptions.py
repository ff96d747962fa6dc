"""
Error taxonomy for the dispatch core.

Delivery failures are not exceptions; transports report them as
`DeliveryResult` values.
"""


class ReminderError(Exception):
    """Base class for dispatch core errors"""


class RuleInvalid(ReminderError):
    """Malformed or structurally invalid recurrence rule"""


class ResolverUnschedulable(ReminderError):
    """No future trigger instant exists within the resolver's search bound"""


class PersistenceError(ReminderError):
    """A store, index or registry operation failed"""


class CycleFatalError(ReminderError):
    """Unexpected failure that aborts the remainder of a dispatch cycle"""
