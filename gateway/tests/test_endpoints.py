"""Tests for parley.endpoints: weighted endpoint selection."""

import random
from collections import Counter

import pytest

from conftest import make_runtime
from parley.endpoints import ResolvedEndpoint, select_endpoint
from parley.errors import MisconfiguredWeights
from parley.models import Endpoint, ModelDescriptor


def _model(endpoints=None) -> ModelDescriptor:
    return ModelDescriptor.model_validate(
        {
            "name": "m",
            "user_message_token": "<|u|>",
            "assistant_message_token": "<|a|>",
            "endpoints": endpoints,
        }
    )


class TestSelectEndpoint:
    def test_no_endpoints_uses_default(self):
        runtime = make_runtime()
        endpoint = select_endpoint(_model(None), runtime)
        assert endpoint.url == runtime.default_endpoint.url

    def test_empty_endpoints_uses_default(self):
        runtime = make_runtime()
        assert select_endpoint(_model([]), runtime).url == runtime.default_endpoint.url

    def test_single_endpoint(self):
        model = _model([{"url": "http://a.test/generate_stream"}])
        assert select_endpoint(model, make_runtime()).url == "http://a.test/generate_stream"

    def test_draw_walks_cumulative_weights(self):
        class FixedRandom:
            def __init__(self, value):
                self.value = value

            def random(self):
                return self.value

        model = _model([{"url": "http://a.test", "weight": 1}, {"url": "http://b.test", "weight": 3}])
        runtime = make_runtime()
        # total weight 4: draws below 1 land on a, the rest on b
        assert select_endpoint(model, runtime, FixedRandom(0.2)).url == "http://a.test"
        assert select_endpoint(model, runtime, FixedRandom(0.25)).url == "http://b.test"
        assert select_endpoint(model, runtime, FixedRandom(0.99)).url == "http://b.test"

    def test_frequencies_converge_to_weights(self):
        model = _model(
            [
                {"url": "http://a.test", "weight": 1},
                {"url": "http://b.test", "weight": 3},
                {"url": "http://c.test", "weight": 6},
            ]
        )
        runtime = make_runtime()
        rng = random.Random(1234)
        trials = 20000
        counts = Counter(select_endpoint(model, runtime, rng).url for _ in range(trials))
        assert counts["http://a.test"] / trials == pytest.approx(0.1, abs=0.02)
        assert counts["http://b.test"] / trials == pytest.approx(0.3, abs=0.02)
        assert counts["http://c.test"] / trials == pytest.approx(0.6, abs=0.02)

    def test_zero_total_weight_is_assertion_failure(self):
        # Bypass validation to reach the guarded state
        bad = Endpoint.model_construct(url="http://a.test", weight=0)
        model = _model([{"url": "http://b.test"}]).model_copy(update={"endpoints": [bad]})
        with pytest.raises(MisconfiguredWeights):
            select_endpoint(model, make_runtime())
        assert issubclass(MisconfiguredWeights, AssertionError)


class TestAuthorization:
    def test_no_token_means_no_header(self):
        endpoint = select_endpoint(_model(None), make_runtime())
        assert endpoint.authorization is None
        assert endpoint.headers() == {}

    def test_bearer_token(self):
        runtime = make_runtime(access_token="hf_secret")
        endpoint = select_endpoint(_model([{"url": "http://a.test"}]), runtime)
        assert endpoint.authorization == "Bearer hf_secret"
        assert endpoint.headers() == {"Authorization": "Bearer hf_secret"}

    def test_resolved_endpoint_is_frozen(self):
        endpoint = ResolvedEndpoint(url="http://a.test")
        with pytest.raises(AttributeError):
            endpoint.url = "http://b.test"
