from __future__ import annotations

import math

import pytest

from trainyard.estimator import (
    MAX_HOURS,
    MIN_HOURS,
    base_cost_per_hour,
    estimate,
    gpu_multiplier,
    model_size,
    training_hours,
)

pytestmark = [pytest.mark.unit]


class TestModelSize:
    @pytest.mark.parametrize(
        ("name", "size"),
        [
            ("bert-base", "base"),
            ("bert-large-uncased", "large"),
            ("distilbert-small", "small"),
            ("llama-2-7b", "7b"),
            ("llama-2-13b-chat", "13b"),
            ("llama-2-70b", "70b"),
            ("Llama-2-70B-hf", "70b"),
            ("gpt2", "base"),
        ],
    )
    def test_longest_size_token_wins(self, name: str, size: str):
        assert model_size(name) == size


class TestRates:
    def test_base_cost_scales_with_model_size(self):
        assert base_cost_per_hour("text_classification", "bert-base") == pytest.approx(0.6)
        assert base_cost_per_hour("text_generation", "llama-2-7b") == pytest.approx(3.0)

    def test_unknown_task_uses_custom_rate(self):
        assert base_cost_per_hour("protein_folding", "model-small") == pytest.approx(1.0)

    def test_unknown_gpu_multiplier_is_one(self):
        assert gpu_multiplier("H200") == 1.0
        assert gpu_multiplier(None) == 1.0
        assert gpu_multiplier("A100") == 2.5

    def test_hours_scale_with_epochs(self):
        assert training_hours("text_classification", {"epochs": 6}) == pytest.approx(4.0)
        assert training_hours("text_classification", {}) == pytest.approx(2.0)

    def test_hours_are_clamped(self):
        assert training_hours("sentiment_analysis", {"epochs": 0.1}) == MIN_HOURS
        assert training_hours("text_generation", {"epochs": 300}) == MAX_HOURS


class TestEstimate:
    def test_bert_base_on_3090(self):
        est = estimate("text_classification", "bert-base", {"epochs": 3}, 24, "RTX 3090")

        assert est.estimated_hours == pytest.approx(2.0)
        assert est.vast_cost == pytest.approx(1.2)
        assert est.platform_fee == pytest.approx(0.6)
        assert est.cost == pytest.approx(1.8)
        assert est.tokens == 180
        # 0.5 x 1.2 x 1.0 per hour plus the fee spread over the run
        assert est.cost_per_hour == pytest.approx(0.6 + 0.6 / 2.0)

    def test_runtime_cap_limits_hours(self):
        est = estimate("text_generation", "llama-2-13b", {"epochs": 3}, 2, "A100")
        assert est.estimated_hours == 2
        assert est.vast_cost == pytest.approx(1.2 * 4.0 * 2.5 * 2)

    def test_tokens_round_up(self):
        est = estimate("sentiment_analysis", "bert-small", {"epochs": 1}, 24, "T4")
        assert est.tokens == math.ceil(round(est.cost * 100, 6))

    def test_deterministic(self):
        args = ("question_answering", "roberta-large", {"epochs": 5}, 10, "RTX 4090")
        assert estimate(*args) == estimate(*args)

    def test_rejects_non_positive_runtime(self):
        with pytest.raises(ValueError):
            estimate("custom", "model", {}, 0)
