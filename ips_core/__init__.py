"""
Indoor Positioning Estimation Core.

Fuses BLE beacon / Wi-Fi RSSI, inertial PDR and optional visual motion
into a single 2D position with uncertainty.

Package structure:
- proto: Immutable value types (readings, estimates, motion)
- metrics: Diagnostics, counters, histograms
- localization: RSSI distance estimation and trilateration
- pdr: Step detection, heading, step length, motion integration
- fusion: EKF fusion engine and the positioning pipeline
"""

__version__ = "0.1.0"
__author__ = "Indoor Positioning Team"
