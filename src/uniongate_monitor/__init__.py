"""UnionGate Monitor: live telemetry and access-event core for gate devices."""

__version__ = "0.1.0"
