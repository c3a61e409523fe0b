"""Unit tests for StageSequencer."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from healthcheck.records import StaticIdentityProvider
from healthcheck.sequencer import StageSequencer
from healthcheck.stability import StabilityEvaluator
from healthcheck.state import Stage, Verdict


def _sequencer(on_completed=None, identity="face-1", monitor=None):
    return StageSequencer(
        [Stage.TEMPERATURE, Stage.ALCOHOL],
        StabilityEvaluator(threshold=7),
        monitor or MagicMock(),
        identity_provider=StaticIdentityProvider(identity),
        on_completed=on_completed,
    )


@pytest.mark.unit
class TestStageSequencer:

    def test_initial_state(self):
        seq = _sequencer()
        snap = seq.snapshot()

        assert snap.current_stage is Stage.TEMPERATURE
        assert snap.stability_counter == 0
        assert snap.completed is False
        assert dict(snap.latest_values) == {}
        assert snap.identity_token == "face-1"

    @pytest.mark.asyncio
    async def test_seven_temperatures_advance_to_alcohol(self, temperature):
        seq = _sequencer()
        for i in range(6):
            outcome = await seq.receive(temperature(36.0 + i / 10))
            assert outcome.accepted
            assert not outcome.stage_complete

        outcome = await seq.receive(temperature(36.8))

        assert outcome.stage_complete is True
        assert outcome.completed is False
        assert seq.current_stage is Stage.ALCOHOL
        assert seq.stability_counter == 0
        assert seq.snapshot().value_for(Stage.TEMPERATURE) == pytest.approx(36.8)

    @pytest.mark.asyncio
    async def test_cross_stage_reading_is_noop(self, verdict, temperature):
        seq = _sequencer()
        await seq.receive(temperature())
        before = seq.snapshot()

        outcome = await seq.receive(verdict(Verdict.NORMAL))

        assert outcome.accepted is False
        assert outcome.reason == "cross-stage"
        assert seq.snapshot() == before

    @pytest.mark.asyncio
    async def test_accepted_reading_resets_liveness(self, temperature, verdict):
        monitor = MagicMock()
        seq = _sequencer(monitor=monitor)

        await seq.receive(temperature())
        await seq.receive(verdict())

        monitor.on_reading_accepted.assert_called_once()

    @pytest.mark.asyncio
    async def test_full_pass_completes_once(self, temperature, verdict):
        on_completed = AsyncMock()
        seq = _sequencer(on_completed=on_completed)

        for _ in range(7):
            await seq.receive(temperature(37.0))
        outcome = await seq.receive(verdict(Verdict.NORMAL))

        assert outcome.completed is True
        assert seq.completed is True
        assert seq.current_stage is None
        on_completed.assert_awaited_once()
        snapshot = on_completed.await_args.args[0]
        assert snapshot.value_for(Stage.TEMPERATURE) == pytest.approx(37.0)
        assert snapshot.value_for(Stage.ALCOHOL) is Verdict.NORMAL

        # late readings and a second advance change nothing
        assert (await seq.receive(verdict(Verdict.ABNORMAL))).accepted is False
        assert await seq.advance() is False
        on_completed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_indeterminate_verdict_does_not_complete(self, temperature, verdict):
        on_completed = AsyncMock()
        seq = _sequencer(on_completed=on_completed)
        await seq.set_stage(Stage.ALCOHOL)

        outcome = await seq.receive(verdict(Verdict.INDETERMINATE))

        assert outcome.accepted is True
        assert seq.current_stage is Stage.ALCOHOL
        assert seq.stability_counter == 0
        on_completed.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_manual_advance(self):
        on_completed = AsyncMock()
        seq = _sequencer(on_completed=on_completed)

        assert await seq.advance() is False
        assert seq.current_stage is Stage.ALCOHOL
        assert await seq.advance() is True
        on_completed.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_set_stage_resets_counter(self, temperature):
        seq = _sequencer()
        for _ in range(3):
            await seq.receive(temperature())
        assert seq.stability_counter == 3

        await seq.set_stage(Stage.ALCOHOL)
        assert seq.current_stage is Stage.ALCOHOL
        assert seq.stability_counter == 0

        await seq.set_stage(Stage.TEMPERATURE)
        assert seq.stability_counter == 0

    @pytest.mark.asyncio
    async def test_set_stage_rejects_unknown_stage(self):
        seq = StageSequencer([Stage.TEMPERATURE], StabilityEvaluator(), MagicMock())
        with pytest.raises(ValueError):
            await seq.set_stage(Stage.ALCOHOL)

    @pytest.mark.asyncio
    async def test_listeners_receive_snapshots(self, temperature):
        seq = _sequencer()
        listener = AsyncMock()
        seq.add_listener(listener)

        await seq.receive(temperature(36.4))

        listener.assert_awaited_once()
        assert listener.await_args.args[0].stability_counter == 1

        seq.remove_listener(listener)
        await seq.receive(temperature(36.4))
        listener.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_receive(self, temperature):
        seq = _sequencer()
        seq.add_listener(AsyncMock(side_effect=RuntimeError("ui gone")))

        outcome = await seq.receive(temperature())

        assert outcome.accepted is True
        assert seq.stability_counter == 1

    @pytest.mark.asyncio
    async def test_reset_returns_to_initial_state(self, temperature):
        seq = _sequencer()
        await seq.advance()
        await seq.receive(temperature())

        seq.reset(session_number=4)

        snap = seq.snapshot()
        assert snap.current_stage is Stage.TEMPERATURE
        assert snap.stability_counter == 0
        assert dict(snap.latest_values) == {}
        assert snap.session_number == 4

    @pytest.mark.parametrize("stages", [[], [Stage.ALCOHOL, Stage.ALCOHOL]])
    def test_invalid_sequences(self, stages):
        with pytest.raises(ValueError):
            StageSequencer(stages, StabilityEvaluator(), MagicMock())

    @pytest.mark.asyncio
    async def test_progress_projection(self, temperature, verdict):
        seq = _sequencer()
        for _ in range(3):
            await seq.receive(temperature())
        assert seq.snapshot().progress == pytest.approx(3 / 7)

        data = seq.snapshot().to_dict({Verdict.NORMAL: "Трезвый"})
        assert data["current_stage"] == "TEMPERATURE"
        assert data["values"]["TEMPERATURE"]["value"] == pytest.approx(36.6)
        assert data["has_identity"] is True

    @pytest.mark.asyncio
    async def test_set_stage_reopens_completed_pass(self, verdict):
        seq = _sequencer()
        await seq.advance()
        await seq.advance()
        assert seq.completed is True

        await seq.set_stage(Stage.ALCOHOL)

        assert seq.completed is False
        assert seq.current_stage is Stage.ALCOHOL
        assert (await seq.receive(verdict(Verdict.NORMAL))).completed is True
