"""
Test configuration and shared fixtures.
"""

from __future__ import annotations

import pytest
from coincurve import PrivateKey

from quorumvault.models import AddressInfo, ChainParams, NetworkType
from tests.helpers import address_info, make_private_key


@pytest.fixture
def signer_key() -> PrivateKey:
    return make_private_key(0xC0FFEE)


@pytest.fixture
def btc_chain() -> ChainParams:
    return ChainParams.bitcoin(NetworkType.TESTNET)


@pytest.fixture
def eth_chain() -> ChainParams:
    return ChainParams.ethereum(chain_id=1)


@pytest.fixture
def btc_signer(signer_key: PrivateKey, btc_chain: ChainParams) -> AddressInfo:
    return address_info(signer_key, btc_chain)


@pytest.fixture
def eth_signer(signer_key: PrivateKey, eth_chain: ChainParams) -> AddressInfo:
    return address_info(signer_key, eth_chain)
