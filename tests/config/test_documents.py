import json
from pathlib import Path

import pytest

from mixnet_cluster.config import (
    Account,
    AuthorityConfig,
    LoggingConfig,
    MailProxyConfig,
    ManagementConfig,
    NodeConfig,
    NonvotingPKI,
    ProviderSection,
    Role,
    ServicePlugin,
    VotingAuthorityConfig,
    VotingPKI,
    parse_address,
)
from mixnet_cluster.crypto import decode_key, generate_identity, generate_link_key
from mixnet_cluster.errors import ConfigInvalid


def _mix(tmp_path: Path, **overrides) -> NodeConfig:
    authority = generate_identity()
    kwargs = dict(
        identifier="node-0.eXaMpLe.org",
        addresses=["127.0.0.1:30002"],
        data_dir=str(tmp_path / "node-0"),
        is_provider=False,
        identity=generate_identity(),
        pki=NonvotingPKI(address="127.0.0.1:30000", public_key=authority.public_key),
    )
    kwargs.update(overrides)
    return NodeConfig(**kwargs)


def test_parse_address() -> None:
    assert parse_address("127.0.0.1:30001") == ("127.0.0.1", 30001)
    for bad in ("127.0.0.1", ":30001", "host:abc", "host:0", "host:70000"):
        with pytest.raises(ConfigInvalid):
            parse_address(bad)


def test_logging_fixup_defaults_and_rejects_unknown_level() -> None:
    cfg = LoggingConfig(level="debug")
    cfg.fixup("katzenpost.log")
    assert cfg.file == "katzenpost.log"
    assert cfg.level == "DEBUG"
    with pytest.raises(ConfigInvalid):
        LoggingConfig(level="CHATTY").fixup("x.log")
    with pytest.raises(ConfigInvalid):
        LoggingConfig(file="/var/log/x.log").fixup("x.log")


def test_mix_fixup_fills_defaults(tmp_path: Path) -> None:
    cfg = _mix(tmp_path, num_sphinx_workers=0)
    cfg.fixup_and_validate()
    assert cfg.role is Role.MIX
    assert cfg.num_sphinx_workers == 1
    assert cfg.log_path == tmp_path / "node-0" / "katzenpost.log"
    assert cfg.ports() == [30002]


def test_mix_rejects_provider_section_and_management(tmp_path: Path) -> None:
    with pytest.raises(ConfigInvalid):
        _mix(tmp_path, provider=ProviderSection()).fixup_and_validate()
    with pytest.raises(ConfigInvalid):
        _mix(tmp_path, management=ManagementConfig(enable=True)).fixup_and_validate()


def test_relative_data_dir_rejected(tmp_path: Path) -> None:
    with pytest.raises(ConfigInvalid):
        _mix(tmp_path, data_dir="relative/node").fixup_and_validate()


def test_voting_pki_needs_peers(tmp_path: Path) -> None:
    with pytest.raises(ConfigInvalid):
        _mix(tmp_path, pki=VotingPKI(peers=())).fixup_and_validate()


def test_provider_management_socket_and_plugins(tmp_path: Path) -> None:
    cfg = _mix(
        tmp_path,
        identifier="provider-0.eXaMpLe.org",
        data_dir=str(tmp_path / "provider-0"),
        is_provider=True,
        management=ManagementConfig(enable=True),
        provider=ProviderSection(plugins=[ServicePlugin("keyserver", "+keyserver")]),
    )
    cfg.fixup_and_validate()
    assert cfg.role is Role.PROVIDER
    assert cfg.management.path == str(tmp_path / "provider-0" / "management_sock")
    assert cfg.management_socket == tmp_path / "provider-0" / "management_sock"

    cfg.provider.plugins.append(ServicePlugin("loop", "+keyserver"))
    with pytest.raises(ConfigInvalid):
        cfg.fixup_and_validate()


def test_voting_authority_rejects_self_peer(tmp_path: Path) -> None:
    a = VotingAuthorityConfig(
        identifier="authority-0.example.org",
        addresses=["127.0.0.1:30001"],
        data_dir=str(tmp_path / "authority0"),
        identity=generate_identity(),
    )
    a.peers = (a.as_peer(),)
    with pytest.raises(ConfigInvalid, match="itself"):
        a.fixup_and_validate()


def test_node_document_serialization(tmp_path: Path) -> None:
    cfg = _mix(tmp_path)
    cfg.fixup_and_validate()
    (tmp_path / "node-0").mkdir()
    path = cfg.write()
    assert path == tmp_path / "node-0" / "mix.json"
    doc = json.loads(path.read_text())
    assert doc["Server"]["Identifier"] == "node-0.eXaMpLe.org"
    assert doc["Server"]["IsProvider"] is False
    assert decode_key(doc["PKI"]["Nonvoting"]["PublicKey"]) == cfg.pki.public_key
    assert "Provider" not in doc


def test_authority_document_default_log_file(tmp_path: Path) -> None:
    cfg = AuthorityConfig(
        addresses=["127.0.0.1:30000"],
        data_dir=str(tmp_path / "authority"),
        identity=generate_identity(),
    )
    cfg.fixup_and_validate()
    assert cfg.identifier == "nonvoting"
    assert cfg.logging.file == "authority.log"
    assert cfg.to_dict()["Authority"]["Addresses"] == ["127.0.0.1:30000"]


def test_mail_proxy_validation(tmp_path: Path) -> None:
    key = generate_link_key()
    account = Account(user="alice", provider="provider-0.eXaMpLe.org", link_key=key)
    cfg = MailProxyConfig(
        identifier="mailproxy-alice@provider-0.eXaMpLe.org",
        pop3_address="127.0.0.1:30004",
        smtp_address="127.0.0.1:30005",
        data_dir=str(tmp_path / "mp"),
        accounts=[account],
        recipients={account.address: key.public_key},
    )
    cfg.fixup_and_validate()
    assert cfg.ports() == [30004, 30005]
    assert cfg.management.enable
    doc = cfg.to_dict()
    assert doc["Account"][0]["User"] == "alice"
    assert decode_key(doc["Recipients"]["alice@provider-0.eXaMpLe.org"]) == key.public_key

    cfg.recipients = {"bob": key.public_key}
    with pytest.raises(ConfigInvalid):
        cfg.fixup_and_validate()

    cfg.recipients = {}
    cfg.accounts = []
    with pytest.raises(ConfigInvalid):
        cfg.fixup_and_validate()


def test_config_invalid_carries_role(tmp_path: Path) -> None:
    with pytest.raises(ConfigInvalid) as info:
        _mix(tmp_path, identifier="").fixup_and_validate()
    assert info.value.role == "mix"
