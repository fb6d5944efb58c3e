"""In-process timing aggregates"""
import pytest

from boxoffice.infra import timings


@pytest.fixture(autouse=True)
def clean_timings():
    timings.reset()
    yield
    timings.reset()


class TestTimeit:
    async def test_records_success_and_error_separately(self):
        async with timings.timeit("db.settle"):
            pass
        with pytest.raises(RuntimeError):
            async with timings.timeit("db.settle"):
                raise RuntimeError("boom")

        kinds = {a["kind"]: a for a in timings.aggregates()}
        assert kinds["db.settle"]["n"] == 1
        assert kinds["db.settle.error"]["n"] == 1

    def test_summary(self):
        for v in (1.0, 2.0, 3.0, 4.0):
            timings.record_timing("x", v)
        (agg,) = timings.aggregates()
        assert agg["n"] == 4
        assert agg["mean"] == 2.5
        assert agg["p50"] == 2.5
        assert agg["max"] == 4.0

    def test_bounded(self, monkeypatch):
        monkeypatch.setattr(timings, "MAX_SAMPLES_PER_KIND", 3)
        for v in range(5):
            timings.record_timing("y", float(v))
        (agg,) = timings.aggregates()
        assert agg["n"] == 3
        assert agg["max"] == 4.0
