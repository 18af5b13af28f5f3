"""Exception taxonomy shared by the PLC, calibration and alarm layers."""
from __future__ import annotations


class O2MonitorError(Exception):
    """Base class for every error raised by the monitor core."""


class PlcConnectionError(O2MonitorError, ConnectionError):
    """Socket-level failure or a connection that never became ready."""


class PlcTimeoutError(O2MonitorError, TimeoutError):
    """Connect or response wait exceeded its bound."""


class ProtocolError(O2MonitorError, ValueError):
    """Response frame did not carry any decodable samples."""


class ValidationError(O2MonitorError, ValueError):
    """Input rejected before any side effect took place."""


class BusyError(O2MonitorError):
    """A register read was attempted while another exchange is in flight."""


class NotFoundError(O2MonitorError, LookupError):
    """Mutating operation referenced an unknown alarm or chamber."""
