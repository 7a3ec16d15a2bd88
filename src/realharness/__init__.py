"""Public package API for realharness."""

from realharness.config import HarnessConfig
from realharness.context import ExecutionContext
from realharness.errors import AbnormalTerminationError
from realharness.errors import LaunchError
from realharness.errors import RealHarnessError
from realharness.errors import SerializationError
from realharness.errors import SessionStateError
from realharness.fixture import LiveServerFixture
from realharness.fixture import TestEnvironment
from realharness.logs import configure_logging
from realharness.proxy import ProxyException
from realharness.serialization import read_ser
from realharness.serialization import write_ser
from realharness.session import RealServerSession

__all__: list[str] = [
    "AbnormalTerminationError",
    "ExecutionContext",
    "HarnessConfig",
    "LaunchError",
    "LiveServerFixture",
    "ProxyException",
    "RealHarnessError",
    "RealServerSession",
    "SerializationError",
    "SessionStateError",
    "TestEnvironment",
    "configure_logging",
    "read_ser",
    "write_ser",
]
