"""
Typed error kinds raised by the allocation engine.

Every failed precondition aborts the whole operation with no state change and
surfaces one of these to the caller. The `kind` attribute is the stable,
machine-readable error name.
"""


class EngineError(Exception):
    """Base class for all engine failures"""

    kind = 'EngineError'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self):
        return {'error': self.kind, 'message': self.message}


class Unauthorized(EngineError):
    """Caller is not the configured administrator"""
    kind = 'Unauthorized'


class InsufficientAmount(EngineError):
    """Deposit does not exceed the minimum liquidity threshold"""
    kind = 'InsufficientAmount'


class InvalidParameter(EngineError, ValueError):
    """Risk, confidence, allocation or amount outside its allowed range"""
    kind = 'InvalidParameter'


class NotDue(EngineError):
    """Rebalance requested before the trigger condition holds"""
    kind = 'NotDue'


class SlippageExceeded(EngineError):
    """Reported trade outcome slipped past the tolerance"""
    kind = 'SlippageExceeded'


class NotFound(EngineError, KeyError):
    """Record required by the operation does not exist"""
    kind = 'NotFound'

    def __str__(self):
        # KeyError would otherwise wrap the message in quotes
        return self.message
