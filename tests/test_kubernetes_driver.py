import pytest

from buildrig.driver import DEFAULT_IMAGE, DEFAULT_ROOTLESS_IMAGE, QEMU_IMAGE, DriverError, InitConfig
from buildrig.kubernetes_driver import (
    LOADBALANCE_RANDOM,
    LOADBALANCE_STICKY,
    PRIORITY_SUPPORTED,
    PRIORITY_UNSUPPORTED,
    KubernetesFactory,
    deployment_name_from_builder,
)
from buildrig.manifest import Toleration


class FakeKubeConfig:
    def __init__(self, namespace="test"):
        self._namespace = namespace

    def client_config(self):
        return {"host": "cluster"}

    def namespace(self):
        return self._namespace, True


def _cfg(opts):
    return InitConfig(name="buildx_buildkit_test", kube_client_config=FakeKubeConfig(), driver_opts=opts)


def test_valid_options():
    cfg = _cfg(
        {
            "namespace": "test-ns",
            "image": "test:latest",
            "replicas": "2",
            "requests.cpu": "100m",
            "requests.memory": "32Mi",
            "limits.cpu": "200m",
            "limits.memory": "64Mi",
            "rootless": "true",
            "nodeselector": "selector1=value1,selector2=value2",
            "tolerations": "key=tolerationKey1,value=tolerationValue1,operator=Equal,effect=NoSchedule,tolerationSeconds=60;key=tolerationKey2,operator=Exists",
            "loadbalance": "random",
            "qemu.install": "true",
            "qemu.image": "qemu:latest",
        }
    )
    r, loadbalance, ns = KubernetesFactory().process_driver_opts(cfg.name, "test", cfg)
    assert ns == "test-ns"
    assert r.image == "test:latest"
    assert r.replicas == 2
    assert r.requests_cpu == "100m"
    assert r.requests_memory == "32Mi"
    assert r.limits_cpu == "200m"
    assert r.limits_memory == "64Mi"
    assert r.rootless is True
    assert r.node_selector == {"selector1": "value1", "selector2": "value2"}
    assert r.tolerations == [
        Toleration(
            key="tolerationKey1",
            operator="Equal",
            value="tolerationValue1",
            effect="NoSchedule",
            toleration_seconds=60,
        ),
        Toleration(key="tolerationKey2", operator="Exists"),
    ]
    assert loadbalance == LOADBALANCE_RANDOM
    assert r.qemu.install is True
    assert r.qemu.image == "qemu:latest"


def test_no_options():
    cfg = _cfg({})
    r, loadbalance, ns = KubernetesFactory().process_driver_opts(cfg.name, "test", cfg)
    assert ns == "test"
    assert r.image == DEFAULT_IMAGE
    assert r.replicas == 1
    assert r.requests_cpu == ""
    assert r.requests_memory == ""
    assert r.limits_cpu == ""
    assert r.limits_memory == ""
    assert r.rootless is False
    assert not r.node_selector
    assert not r.tolerations
    assert loadbalance == LOADBALANCE_STICKY
    assert r.qemu.install is False
    assert r.qemu.image == QEMU_IMAGE


def test_rootless_override():
    cfg = _cfg({"rootless": "true", "loadbalance": "sticky"})
    r, loadbalance, ns = KubernetesFactory().process_driver_opts(cfg.name, "test", cfg)
    assert ns == "test"
    assert r.image == DEFAULT_ROOTLESS_IMAGE
    assert r.replicas == 1
    assert r.rootless is True
    assert not r.node_selector
    assert not r.tolerations
    assert loadbalance == LOADBALANCE_STICKY
    assert r.qemu.install is False
    assert r.qemu.image == QEMU_IMAGE


@pytest.mark.parametrize(
    "opts",
    [
        {"replicas": "invalid"},
        {"rootless": "invalid"},
        {"tolerations": "key=foo,value=bar,invalid=foo2"},
        {"tolerations": "key=foo,value=bar,tolerationSeconds=invalid"},
        {"loadbalance": "invalid"},
        {"qemu.install": "invalid"},
        {"invalid": "foo"},
    ],
)
def test_invalid_options(opts):
    cfg = _cfg(opts)
    with pytest.raises(DriverError):
        KubernetesFactory().process_driver_opts(cfg.name, "test", cfg)


def test_deployment_name_from_builder():
    assert deployment_name_from_builder("buildx_buildkit_loving_mendeleev0") == "loving-mendeleev0"


def test_deployment_name_requires_prefix():
    with pytest.raises(DriverError):
        deployment_name_from_builder("loving_mendeleev0")


def test_priority():
    factory = KubernetesFactory()
    assert factory.priority("", None) == PRIORITY_UNSUPPORTED
    assert factory.priority("", object()) == PRIORITY_SUPPORTED
    assert factory.allows_instances() is True


def test_new_requires_kube_config():
    with pytest.raises(DriverError):
        KubernetesFactory(lambda **kw: kw).new(InitConfig(name="buildx_buildkit_x"))


def test_new_without_builder_raises():
    with pytest.raises(DriverError):
        KubernetesFactory().new(_cfg({}))


def test_new_passes_prepared_deployment():
    factory = KubernetesFactory(lambda **kw: kw)
    result = factory.new(_cfg({"replicas": "3", "namespace": "ns1", "loadbalance": "random"}))
    assert result["namespace"] == "ns1"
    assert result["min_replicas"] == 3
    assert result["loadbalance"] == LOADBALANCE_RANDOM
    assert result["deployment"]["metadata"]["name"] == "test"
    assert result["deployment"]["spec"]["replicas"] == 3
    assert result["client_config"] == {"host": "cluster"}
    assert result["factory"] is factory


def test_new_namespace_error_is_wrapped():
    class BrokenConfig(FakeKubeConfig):
        def namespace(self):
            raise OSError("no namespace file")

    cfg = InitConfig(name="buildx_buildkit_test", kube_client_config=BrokenConfig())
    with pytest.raises(DriverError, match="cannot determine Kubernetes namespace"):
        KubernetesFactory(lambda **kw: kw).new(cfg)