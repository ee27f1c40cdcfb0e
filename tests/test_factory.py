"""Tests for settings-driven wiring and the session registry."""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path

import pytest

from embryolens.factory import build_metrics_source, build_services, build_strategy, build_validity_policy
from embryolens.main import _expire_idle_sessions
from embryolens.ml.image_classifier import OnnxClassificationStrategy, RandomScoreStrategy
from embryolens.ml.metrics import EmptyMetricsSource, EvaluationFileSource, SyntheticMetricsSource
from embryolens.ml.model_manager import OnnxModelManager
from embryolens.ml.validity import AcceptAllPolicy, HeuristicValidityPolicy, RandomRejectionPolicy
from embryolens.session.registry import SessionRegistry
from embryolens.session.state import SessionState

from conftest import make_settings


class TestBuildValidityPolicy:
    def test_heuristic_by_default(self) -> None:
        policy = build_validity_policy(make_settings(min_image_side=96, min_contrast=4.0))
        assert isinstance(policy, HeuristicValidityPolicy)
        assert policy.min_side == 96
        assert policy.min_contrast == 4.0

    def test_random(self) -> None:
        assert isinstance(build_validity_policy(make_settings(validity_policy="random")), RandomRejectionPolicy)

    def test_accept_all(self) -> None:
        assert isinstance(build_validity_policy(make_settings(validity_policy="accept_all")), AcceptAllPolicy)


class TestBuildStrategy:
    def test_random(self) -> None:
        assert isinstance(build_strategy(make_settings(), None), RandomScoreStrategy)

    def test_onnx(self, tmp_path: Path) -> None:
        settings = make_settings(classifier="onnx", models_dir=str(tmp_path), model_name="embryo_stage_vit_b16")
        strategy = build_strategy(settings, OnnxModelManager(settings))
        assert isinstance(strategy, OnnxClassificationStrategy)
        assert strategy.name == "embryo_stage_vit_b16"

    def test_onnx_requires_manager(self) -> None:
        with pytest.raises(ValueError, match="model manager"):
            build_strategy(make_settings(classifier="onnx"), None)

    def test_onnx_requires_registered_model(self, tmp_path: Path) -> None:
        settings = make_settings(classifier="onnx", models_dir=str(tmp_path), model_name="unknown")
        with pytest.raises(KeyError):
            build_strategy(settings, OnnxModelManager(settings))


class TestBuildMetricsSource:
    def test_synthetic(self) -> None:
        assert isinstance(build_metrics_source(make_settings()), SyntheticMetricsSource)

    def test_none(self) -> None:
        assert isinstance(build_metrics_source(make_settings(metrics_source="none")), EmptyMetricsSource)

    def test_file(self, tmp_path: Path) -> None:
        settings = make_settings(metrics_source="file", evaluation_path=str(tmp_path / "eval.npz"))
        assert isinstance(build_metrics_source(settings), EvaluationFileSource)

    def test_file_requires_path(self) -> None:
        with pytest.raises(ValueError, match="EVALUATION_PATH"):
            build_metrics_source(make_settings(metrics_source="file"))


class TestSessionRegistry:
    async def test_sessions_are_independent(self, embryo_png: bytes) -> None:
        services = build_services(make_settings())
        registry = SessionRegistry(services.new_controller)
        try:
            first = registry.create()
            second = registry.create()
            assert first.session_id != second.session_id
            assert len(registry) == 2

            await first.upload(embryo_png, "image/png")

            assert registry.get(first.session_id).snapshot.state is SessionState.CLASSIFIED
            assert registry.get(second.session_id).snapshot.state is SessionState.IDLE
        finally:
            await registry.shutdown()
            services.shutdown()
        assert len(registry) == 0

    async def test_unknown_session(self) -> None:
        services = build_services(make_settings())
        registry = SessionRegistry(services.new_controller)
        try:
            with pytest.raises(KeyError, match="Unknown session"):
                registry.get("missing")
            with pytest.raises(KeyError):
                await registry.close("missing")
        finally:
            services.shutdown()


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestSessionExpiry:
    async def test_idle_sessions_are_closed(self, embryo_png: bytes) -> None:
        services = build_services(make_settings())
        clock = _Clock()
        registry = SessionRegistry(services.new_controller, ttl=60, clock=clock)
        try:
            idle = registry.create()
            active = registry.create()
            await idle.upload(embryo_png, "image/png")

            clock.now += 45
            registry.get(active.session_id)
            clock.now += 30

            expired = await registry.expire_idle()

            assert expired == [idle.session_id]
            assert len(registry) == 1
            assert registry.get(active.session_id) is active
            with pytest.raises(KeyError):
                registry.get(idle.session_id)
        finally:
            await registry.shutdown()
            services.shutdown()

    async def test_pending_classification_is_kept(self, embryo_png: bytes) -> None:
        services = build_services(make_settings(simulated_latency_ms=5_000))
        clock = _Clock()
        registry = SessionRegistry(services.new_controller, ttl=60, clock=clock)
        try:
            controller = registry.create()
            await controller.upload(embryo_png, "image/png", wait=False)
            clock.now += 120

            assert await registry.expire_idle() == []
            assert len(registry) == 1
        finally:
            await registry.shutdown()
            services.shutdown()

    async def test_zero_ttl_never_expires(self) -> None:
        services = build_services(make_settings())
        clock = _Clock()
        registry = SessionRegistry(services.new_controller, clock=clock)
        try:
            registry.create()
            clock.now += 1_000_000
            assert await registry.expire_idle() == []
            assert len(registry) == 1
        finally:
            await registry.shutdown()
            services.shutdown()

    async def test_sweeper_expires_periodically(self) -> None:
        services = build_services(make_settings())
        clock = _Clock()
        registry = SessionRegistry(services.new_controller, ttl=1, clock=clock)
        sweeper = asyncio.create_task(_expire_idle_sessions(registry, 0.01))
        try:
            registry.create()
            clock.now += 5
            await asyncio.sleep(0.1)
            assert len(registry) == 0
        finally:
            sweeper.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper
            await registry.shutdown()
            services.shutdown()
