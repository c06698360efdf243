import pytest

from buildrig.driver import DriverError, DriverNotConnecting, Feature, InitConfig, Status
from buildrig.remote_driver import RemoteDriver, RemoteFactory, TLSOptions


class FakeClient:
    def __init__(self, fail=False):
        self.fail = fail

    def list_workers(self):
        if self.fail:
            raise ConnectionError("down")
        return []


def cfg(**opts):
    return InitConfig(name="n", endpoint_addr="tcp://buildkitd.example.com:1234", driver_opts=opts)


def test_priority():
    f = RemoteFactory()
    assert f.priority("tcp://localhost:1234", None) == 20
    assert f.priority("http://localhost", None) == 90
    assert f.allows_instances() is True
    assert f.name == "remote"


def test_rejects_files_and_flags():
    f = RemoteFactory()
    with pytest.raises(DriverError, match="config file"):
        f.new(InitConfig(files={"a": b"b"}))
    with pytest.raises(DriverError, match="buildkit flags"):
        f.new(InitConfig(buildkit_flags=["--debug"]))


def test_no_tls():
    d = RemoteFactory().new(cfg())
    assert d.tls is None
    assert d.config.endpoint_addr == "tcp://buildkitd.example.com:1234"


def test_relative_path_rejected():
    with pytest.raises(DriverError, match="non-absolute path 'ca.pem' provided for cacert"):
        RemoteFactory().new(cfg(cacert="ca.pem"))


def test_invalid_option():
    with pytest.raises(DriverError, match="invalid driver option bogus for remote driver"):
        RemoteFactory().new(cfg(bogus="x"))


def test_missing_cacert():
    with pytest.raises(DriverError, match="tls enabled, but missing keys cacert$"):
        RemoteFactory().new(cfg(servername="srv"))


def test_missing_key_and_cert():
    with pytest.raises(DriverError, match="missing keys key"):
        RemoteFactory().new(cfg(cacert="/ca.pem", cert="/cert.pem"))
    with pytest.raises(DriverError, match="missing keys cert"):
        RemoteFactory().new(cfg(cacert="/ca.pem", key="/key.pem"))


def test_tls_servername_guessed():
    d = RemoteFactory().new(cfg(cacert="/ca.pem", cert="/cert.pem", key="/key.pem"))
    assert d.tls == TLSOptions(
        server_name="buildkitd.example.com", ca_cert="/ca.pem", cert="/cert.pem", key="/key.pem"
    )


def test_plain_properties():
    d = RemoteFactory().new(cfg())
    assert d.features() == {f: True for f in Feature}
    assert d.version() == ""
    assert d.is_moby_driver() is False
    assert d.stop(True) is None
    assert d.rm(True, True, True) is None


def test_client_without_connector():
    d = RemoteFactory().new(cfg())
    with pytest.raises(DriverNotConnecting):
        d.client()
    assert d.info().status == Status.INACTIVE


def test_client_passes_endpoint_and_tls():
    seen = []

    def connect(addr, tls):
        seen.append((addr, tls))
        return FakeClient()

    d = RemoteFactory(connect).new(cfg(cacert="/ca.pem", servername="srv"))
    assert d.info().status == Status.RUNNING
    assert seen[0][0] == "tcp://buildkitd.example.com:1234"
    assert seen[0][1].server_name == "srv"


def test_info_inactive_when_workers_fail():
    d = RemoteFactory(lambda a, t: FakeClient(fail=True)).new(cfg())
    assert d.info().status == Status.INACTIVE


def test_bootstrap_waits_until_active():
    clients = [FakeClient(fail=True), FakeClient(fail=True), FakeClient()]
    sleeps = []
    d = RemoteDriver(RemoteFactory(), cfg(), connect=lambda a, t: clients.pop(0), sleep=sleeps.append)
    d.bootstrap(None)
    assert clients == []
    assert sleeps == [0, 1]