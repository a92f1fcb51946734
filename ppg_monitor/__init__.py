"""
PPG Monitor – fingertip photoplethysmography heart-rate measurement.
Cover the camera and its light with a fingertip; the pipeline tracks the
red-channel pulse and reports BPM with a confidence and a ± error margin.
"""

__version__ = "0.1.0"
__author__ = "ppg_monitor"
