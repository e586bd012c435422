"""
Engine error kinds.

Every error carries a machine-readable `code`. The HTTP layer and the CLI
report that code verbatim, so codes are part of the public surface.

Numeric failures (NumericOverflow, InvalidArgument, ConvergenceFailure) are
fatal for the call that raised them. Nothing in the engine retries them.
"""


class AMMError(Exception):
    code = "amm_error"


class InvalidParameters(AMMError):
    code = "invalid_parameters"


class AlreadyInitialized(AMMError):
    code = "already_initialized"


class MarketNotOpen(AMMError):
    code = "market_not_open"


class MarketNotResolved(AMMError):
    code = "market_not_resolved"


class Unauthorized(AMMError):
    code = "unauthorized"


class NumericOverflow(AMMError):
    code = "numeric_overflow"


class InvalidArgument(AMMError):
    code = "invalid_argument"


class ConvergenceFailure(AMMError):
    code = "convergence_failure"


class InsufficientCollateral(AMMError):
    code = "insufficient_collateral"


class InsufficientBalance(AMMError):
    code = "insufficient_balance"


class InsufficientAllowance(AMMError):
    code = "insufficient_allowance"


class InsufficientReserve(AMMError):
    code = "insufficient_reserve"
