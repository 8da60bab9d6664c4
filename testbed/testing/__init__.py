"""
testbed testing support

Service wiring, timing of setup and cleanup, and Docker helpers for the
integration suite.
"""

from .performance_monitor import PerformanceMonitor, PerformanceMetric

__all__ = ['PerformanceMonitor', 'PerformanceMetric']
