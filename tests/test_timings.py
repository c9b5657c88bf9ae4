from festgate.infra import timings


async def test_samples_are_bounded_per_kind(monkeypatch) -> None:
    monkeypatch.setattr(timings, "TIMINGS_WINDOW", 5)
    monkeypatch.setattr(timings, "_TIMINGS", {})

    for i in range(50):
        timings.record_timing("store.get", float(i))
    async with timings.timeit("gate.confirm"):
        pass

    stats = {rec["kind"]: rec for rec in timings.aggregates()}
    assert stats["store.get"]["n"] == 5
    # only the newest samples survive
    assert stats["store.get"]["mean"] == 47.0
    assert stats["gate.confirm"]["n"] == 1
    assert stats["gate.confirm"]["std"] == 0.0
