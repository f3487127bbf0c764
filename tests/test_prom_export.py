from __future__ import annotations

from leasing_agent.metrics import CompositeMetrics, M, Metrics
from leasing_agent.prom_export import PromExporter


def test_prom_export_renders_gauge_counter_histogram() -> None:
    exp = PromExporter(buckets=(100, 500))
    exp.inc(M["tool_invocations_total"], 2)
    exp.observe(M["turn_ms"], 120)
    exp.observe(M["turn_ms"], 700)
    exp.set(M["sessions_active"], 3)

    text = exp.render()
    assert "# TYPE leasing_agent_tools_invocations_total counter" in text
    assert "leasing_agent_tools_invocations_total 2" in text
    assert "# TYPE leasing_agent_pipeline_turn_ms histogram" in text
    assert 'leasing_agent_pipeline_turn_ms_bucket{le="100"} 0' in text
    assert 'leasing_agent_pipeline_turn_ms_bucket{le="500"} 1' in text
    assert 'leasing_agent_pipeline_turn_ms_bucket{le="+Inf"} 2' in text
    assert "leasing_agent_pipeline_turn_ms_sum 820" in text
    assert "# TYPE leasing_agent_sessions_active gauge" in text
    assert "leasing_agent_sessions_active 3" in text


def test_composite_metrics_fans_out() -> None:
    local = Metrics()
    exp = PromExporter(buckets=(5,))
    sink = CompositeMetrics(local, exp)
    sink.inc(M["events_total"])
    sink.observe(M["steps_per_turn"], 2)
    sink.set(M["sessions_active"], 1)

    assert local.get(M["events_total"]) == 1
    assert local.get_hist(M["steps_per_turn"]) == [2]
    assert local.get_gauge(M["sessions_active"]) == 1
    assert "leasing_agent_webhook_events_total 1" in exp.render()
