from __future__ import annotations

from utils.metrics import Registry


def test_counter_and_summary_render() -> None:
    reg = Registry()
    decisions = reg.counter("t_rate_limit_requests_total", "Decisions.", ("scope", "decision"))
    latency = reg.summary("t_duration_seconds", "Latency.", ("target_kind",))
    plain = reg.counter("t_plain_total", "No labels.")

    decisions.inc(scope="ip", decision="allowed")
    decisions.inc(scope="ip", decision="allowed")
    decisions.inc(scope="ip", decision="blocked")
    latency.observe(0.25, target_kind="tmdb")
    latency.observe(0.5, target_kind="tmdb")
    latency.observe(-1, target_kind="tmdb")
    plain.inc(3)

    assert decisions.value(scope="ip", decision="allowed") == 2
    assert decisions.total() == 3
    assert latency.count(target_kind="tmdb") == 3

    out = reg.render()
    assert "# TYPE t_rate_limit_requests_total counter" in out
    assert 't_rate_limit_requests_total{scope="ip",decision="allowed"} 2' in out
    assert 't_rate_limit_requests_total{scope="ip",decision="blocked"} 1' in out
    assert "# TYPE t_duration_seconds summary" in out
    assert 't_duration_seconds_count{target_kind="tmdb"} 3' in out
    assert 't_duration_seconds_sum{target_kind="tmdb"} 0.750000' in out
    assert "t_plain_total 3" in out
    assert out.endswith("\n")


def test_label_values_are_escaped() -> None:
    reg = Registry()
    c = reg.counter("t_total", "x", ("reason",))
    c.inc(reason='bad "quote"\nline')
    assert 't_total{reason="bad \\"quote\\"\\nline"} 1' in reg.render()


def test_reset() -> None:
    reg = Registry()
    c = reg.counter("t_total", "x")
    c.inc()
    reg.reset()
    assert c.total() == 0
    assert "t_total " not in reg.render()
