"""
Tests for control plane configuration.
"""

import pytest

from control_plane.config import (
    ControlPlaneConfig,
    SeverityThresholdConfig,
    SourceWeightConfig,
    get_default_config,
    get_strict_config,
    get_testing_config,
    load_config_from_dict,
    load_config_from_env,
)
from control_plane.types import ControlState, SignalSource, ValidationError


class TestThresholds:
    """Tests for severity band mapping."""

    @pytest.mark.parametrize("severity,expected", [
        (0.0, ControlState.ACTIVE),
        (0.39, ControlState.ACTIVE),
        (0.4, ControlState.THROTTLED),
        (0.69, ControlState.THROTTLED),
        (0.7, ControlState.FROZEN),
        (0.94, ControlState.FROZEN),
        (0.95, ControlState.KILLED),
        (1.0, ControlState.KILLED),
    ])
    def test_default_bands(self, severity, expected):
        assert SeverityThresholdConfig().state_for(severity) == expected

    def test_floor_maps_back_to_state(self):
        thresholds = SeverityThresholdConfig()
        for state in ControlState:
            assert thresholds.state_for(thresholds.floor_for(state)) == state

    @pytest.mark.parametrize("throttle,freeze,kill", [
        (0.7, 0.4, 0.95),
        (0.4, 0.4, 0.95),
        (0.0, 0.5, 0.9),
        (0.4, 0.7, 1.5),
    ])
    def test_invalid_thresholds_rejected(self, throttle, freeze, kill):
        with pytest.raises(ValidationError):
            SeverityThresholdConfig(throttle=throttle, freeze=freeze, kill=kill).validate()


class TestWeights:

    def test_default_weights_are_unit(self):
        weights = SourceWeightConfig()
        assert all(weights.weight_for(source) == 1.0 for source in SignalSource)

    def test_institutional_weights(self):
        weights = SourceWeightConfig.original_weights()
        assert weights.weight_for(SignalSource.BEHAVIOR) == 0.7
        assert weights.weight_for(SignalSource.RECONCILIATION) == 1.0

    def test_out_of_range_weight_rejected(self):
        weights = SourceWeightConfig()
        weights.weights[SignalSource.RISK] = 1.5
        with pytest.raises(ValidationError):
            weights.validate()


class TestPresets:

    def test_presets_validate(self):
        for config in (get_default_config(), get_strict_config(), get_testing_config()):
            assert config.validate() is config

    def test_testing_config_has_no_cooldown(self):
        config = get_testing_config()
        assert config.cooldown.min_duration(ControlState.THROTTLED) == 0.0
        assert not config.alerting.enabled

    def test_strict_is_stricter(self):
        strict = get_strict_config()
        default = get_default_config()
        assert strict.thresholds.freeze < default.thresholds.freeze
        assert strict.cooldown.min_duration(ControlState.THROTTLED) > \
            default.cooldown.min_duration(ControlState.THROTTLED)

    def test_health_mapping_must_reach_freeze(self):
        config = ControlPlaneConfig()
        config.health_mapping.action_severity["EXECUTION_FREEZE"] = 0.5
        with pytest.raises(ValidationError):
            config.validate()

    def test_health_mapping_must_reach_throttle(self):
        with pytest.raises(ValidationError):
            load_config_from_dict({"health_mapping": {"THROTTLE": 0.3}})

    def test_health_weight_counts_against_freeze(self):
        with pytest.raises(ValidationError) as exc_info:
            load_config_from_dict({"source_weights": {"STRATEGY_HEALTH": 0.8}})
        assert exc_info.value.context["effective_severity"] < 0.7

    def test_institutional_weights_need_raised_health_mapping(self):
        config = ControlPlaneConfig()
        config.source_weights = SourceWeightConfig.original_weights()
        with pytest.raises(ValidationError):
            config.validate()

        config.health_mapping.action_severity["EXECUTION_FREEZE"] = 0.9
        config.health_mapping.action_severity["THROTTLE"] = 0.6
        assert config.validate() is config


class TestLoaders:

    def test_load_from_dict(self):
        config = load_config_from_dict({
            "thresholds": {"throttle": 0.5, "freeze": 0.7, "kill": 0.9},
            "source_weights": {"behavior": 0.7},
            "cooldown": {"THROTTLED": 60},
            "audit": {"max_limit": 200},
            "max_conflict_retries": 5,
        })
        assert config.thresholds.throttle == 0.5
        assert config.source_weights.weight_for(SignalSource.BEHAVIOR) == 0.7
        assert config.cooldown.min_duration(ControlState.THROTTLED) == 60.0
        assert config.audit.max_limit == 200
        assert config.max_conflict_retries == 5

    def test_load_from_dict_rejects_unknown_source(self):
        with pytest.raises(ValidationError):
            load_config_from_dict({"source_weights": {"ORACLE": 1.0}})

    def test_round_trip_through_dict(self):
        config = get_strict_config()
        assert load_config_from_dict(config.to_dict()).to_dict() == config.to_dict()

    def test_load_from_env(self, monkeypatch):
        monkeypatch.setenv("CONTROL_PLANE_THROTTLE_THRESHOLD", "0.5")
        monkeypatch.setenv("CONTROL_PLANE_KILL_THRESHOLD", "0.9")
        monkeypatch.setenv("CONTROL_PLANE_THROTTLE_COOLDOWN_SECONDS", "30")
        monkeypatch.setenv("CONTROL_PLANE_TELEGRAM_BOT_TOKEN", "token")
        monkeypatch.setenv("CONTROL_PLANE_TELEGRAM_CHAT_ID", "chat")

        config = load_config_from_env()

        assert config.thresholds.throttle == 0.5
        assert config.thresholds.kill == 0.9
        assert config.cooldown.min_duration(ControlState.THROTTLED) == 30.0
        assert config.alerting.telegram_enabled

    def test_load_from_env_rejects_garbage(self, monkeypatch):
        monkeypatch.setenv("CONTROL_PLANE_FREEZE_THRESHOLD", "high")
        with pytest.raises(ValidationError):
            load_config_from_env()
