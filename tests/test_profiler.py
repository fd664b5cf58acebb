import logging

import pytest

from foodlens_api.utils.profiler import StageProfiler

LOGGER = "test.stage_profiler"


def make_profiler(**kwargs):
    kwargs.setdefault("enable", True)
    kwargs.setdefault("every_n_regions", 2)
    return StageProfiler(logger=logging.getLogger(LOGGER), **kwargs)


class TestStageProfiler:
    def test_disabled_profiler_hands_out_nothing(self):
        profiler = make_profiler(enable=False)
        timing = profiler.start("req", 0)
        assert timing is None
        profiler.finish(timing, "ready")
        assert profiler.region_count == 0
        assert profiler.summary() == {}

    def test_region_line_carries_request_and_index(self, caplog):
        profiler = make_profiler(every_n_regions=10)
        timing = profiler.start("abc123", 4)
        with timing.stage("ocr"):
            pass
        with timing.stage("resolve"):
            pass

        with caplog.at_level(logging.DEBUG, logger=LOGGER):
            profiler.finish(timing, "no-match")

        (record,) = [r for r in caplog.records if r.name == LOGGER]
        assert record.levelno == logging.DEBUG
        message = record.getMessage()
        assert "request=abc123" in message
        assert "index=4" in message
        assert "status=no-match" in message
        assert "ocr:" in message and "resolve:" in message

    def test_summary_every_n_regions(self, caplog):
        profiler = make_profiler(every_n_regions=2)
        with caplog.at_level(logging.INFO, logger=LOGGER):
            for index, status in enumerate(["ready", "error", "ready"]):
                timing = profiler.start("req", index)
                with timing.stage("crop"):
                    pass
                profiler.finish(timing, status)

        summaries = [r.getMessage() for r in caplog.records if r.levelno == logging.INFO]
        assert len(summaries) == 1
        assert "regions=2" in summaries[0]
        assert "error:1" in summaries[0] and "ready:1" in summaries[0]
        assert profiler.status_counts == {"ready": 2, "error": 1}

    def test_stage_time_accumulates_and_window_is_bounded(self):
        profiler = make_profiler(window=3)
        for index in range(5):
            timing = profiler.start("req", index)
            with timing.stage("ocr"):
                pass
            with timing.stage("ocr"):
                pass
            assert set(timing.stages_ms) == {"ocr"}
            assert timing.slowest_stage == "ocr"
            profiler.finish(timing, "ready")

        assert len(profiler.stage_stats["ocr"]) == 3
        avg, p95 = profiler.summary()["ocr"]
        assert 0.0 <= avg <= p95

    def test_stage_recorded_when_body_raises(self):
        profiler = make_profiler()
        timing = profiler.start("req", 0)
        with pytest.raises(ValueError):
            with timing.stage("resolve"):
                raise ValueError("boom")
        assert "resolve" in timing.stages_ms
