"""Coverage trace maps and the state machines that trace test executables."""

__version__ = "0.1.0"
__all__ = ["instrumented", "linux", "linux_types", "statemachine", "traces"]