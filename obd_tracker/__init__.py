"""OBD Tracker -- field telemetry agent for ELM327 adapters.

Talks to an ELM327-class adapter over WiFi (TCP) or Bluetooth LE,
polls a curated set of Mode 01 PIDs on a schedule, and relays each
sample to a remote collector as one ``*OBD,...,#`` line over TCP.
"""

__version__ = "0.1.0"
