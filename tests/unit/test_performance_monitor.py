"""
Tests for PerformanceMonitor timing and summaries.
"""

import pytest

from testbed.testing.performance_monitor import PerformanceMonitor


@pytest.mark.asyncio
class TestTracking:
    """Test that operations are timed and results pass through"""

    async def test_result_is_returned_and_metric_recorded(self):
        monitor = PerformanceMonitor()

        async def operation():
            return 42

        result = await monitor.track_database_operation('count', operation, {'table': 'accounts'})

        assert result == 42
        metric = monitor.get_metrics()[0]
        assert metric.name == 'count'
        assert metric.type == 'database'
        assert metric.success is True
        assert metric.duration_ms >= 0
        assert metric.metadata == {'table': 'accounts'}

    async def test_failures_propagate_and_are_recorded(self):
        monitor = PerformanceMonitor()

        async def operation():
            raise ValueError("nope")

        with pytest.raises(ValueError):
            await monitor.track_cleanup(operation)

        assert monitor.get_metrics('cleanup')[0].success is False

    async def test_summary_groups_by_type(self):
        monitor = PerformanceMonitor()

        async def ok():
            return None

        async def fail():
            raise RuntimeError("boom")

        await monitor.track_setup(ok)
        await monitor.track_setup(ok)
        with pytest.raises(RuntimeError):
            await monitor.track_setup(fail)
        await monitor.track_cleanup(ok)

        summary = monitor.get_summary()

        assert set(summary) == {'setup', 'cleanup'}
        assert summary['setup']['count'] == 3
        assert summary['setup']['failures'] == 1
        assert summary['cleanup']['count'] == 1
        assert summary['setup']['average_ms'] == pytest.approx(summary['setup']['total_ms'] / 3)

    async def test_only_recent_metrics_are_kept(self):
        monitor = PerformanceMonitor(max_metrics=3)

        async def ok():
            return None

        for index in range(5):
            await monitor.track_database_operation(f"op-{index}", ok)

        assert [m.name for m in monitor.get_metrics()] == ['op-2', 'op-3', 'op-4']

    async def test_reset_clears_metrics(self):
        monitor = PerformanceMonitor()

        async def ok():
            return None

        await monitor.track_setup(ok)
        monitor.reset()

        assert monitor.get_metrics() == []
        assert monitor.get_summary() == {}
