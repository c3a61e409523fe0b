"""Unit tests for StabilityEvaluator."""

import pytest

from healthcheck.stability import StabilityEvaluator
from healthcheck.state import Stage, Verdict


@pytest.mark.unit
class TestStabilityEvaluator:

    @pytest.fixture
    def evaluator(self):
        return StabilityEvaluator(threshold=7)

    def test_counter_is_monotonic_and_clamped(self, evaluator, temperature):
        counter = 0
        seen = []
        for _ in range(12):
            result = evaluator.evaluate(temperature(), counter, Stage.TEMPERATURE)
            assert result.accepted
            assert result.counter >= counter
            counter = result.counter
            seen.append(counter)

        assert seen[:7] == [1, 2, 3, 4, 5, 6, 7]
        assert max(seen) == 7
        assert min(seen) >= 0

    def test_completes_exactly_at_threshold(self, evaluator, temperature):
        assert evaluator.evaluate(temperature(), 5, Stage.TEMPERATURE).stage_complete is False
        result = evaluator.evaluate(temperature(), 6, Stage.TEMPERATURE)
        assert result.counter == 7
        assert result.stage_complete is True

    def test_cross_stage_reading_is_not_counted(self, evaluator, verdict):
        result = evaluator.evaluate(verdict(Verdict.NORMAL), 3, Stage.TEMPERATURE)
        assert result.accepted is False
        assert result.counter == 3
        assert result.stage_complete is False

    def test_no_active_stage_rejects(self, evaluator, temperature):
        result = evaluator.evaluate(temperature(), 0, None)
        assert result.accepted is False

    def test_final_determinate_reading_short_circuits(self, evaluator, verdict):
        result = evaluator.evaluate(verdict(Verdict.ABNORMAL), 0, Stage.ALCOHOL)
        assert result.accepted is True
        assert result.stage_complete is True
        assert result.counter == 0

    def test_final_temperature_short_circuits(self, evaluator, temperature):
        result = evaluator.evaluate(temperature(is_final=True), 2, Stage.TEMPERATURE)
        assert result.stage_complete is True

    def test_indeterminate_reading_neither_counts_nor_completes(self, evaluator, verdict):
        result = evaluator.evaluate(verdict(Verdict.INDETERMINATE), 4, Stage.ALCOHOL)
        assert result.accepted is True
        assert result.counter == 4
        assert result.stage_complete is False

    def test_out_of_range_counter_is_clamped(self, evaluator, temperature):
        assert evaluator.evaluate(temperature(), -5, Stage.TEMPERATURE).counter == 1
        assert evaluator.evaluate(temperature(), 99, Stage.TEMPERATURE).counter == 7

    def test_threshold_must_be_positive(self):
        with pytest.raises(ValueError):
            StabilityEvaluator(threshold=0)
