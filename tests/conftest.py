"""Shared pytest fixtures."""

import pytest

from fakes import FakeKubernetesClient


@pytest.fixture
def k8s() -> FakeKubernetesClient:
    """Fake cluster with the egress gateway installed on 80 and 443."""
    client = FakeKubernetesClient()
    client.add_namespace("istio-egress-gateway")
    client.services[("istio-egress-gateway", "egressgateway")] = [80, 443]
    return client
