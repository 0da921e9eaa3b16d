"""DID pallet runtime variants.

KILT changed the ``Did.create`` call between runtime versions:

- Legacy runtimes take the DID fields directly:
  ``create(did, verification_methods, services, controller, metadata)``

- Current (Spiritnet) runtimes take signed creation details:
  ``create(details, signature)``

The variant is probed once per connection from the call's argument count
and the matching strategy object is used for all later calls.
"""

import enum
import logging
from abc import ABC, abstractmethod
from typing import Any, List, Optional

from keypass_tx.substrate.client import SubstrateChainClient
from keypass_tx.tx import TransactionRequest

logger = logging.getLogger(__name__)


class RuntimeVariant(enum.Enum):
    legacy = "legacy"
    current = "current"


#: ``Did.create(details, signature)``
CURRENT_CREATE_ARG_COUNT = 2


def detect_runtime_variant(create_arg_count: int) -> RuntimeVariant:
    """Variant from the number of ``Did.create`` arguments."""
    if create_arg_count == CURRENT_CREATE_ARG_COUNT:
        return RuntimeVariant.current
    return RuntimeVariant.legacy


class DidRuntime(ABC):
    """Builds DID pallet calls for one runtime variant."""

    variant: RuntimeVariant

    def __init__(self, client: SubstrateChainClient):
        self.client = client

    def __repr__(self):
        return f"<{self.__class__.__name__} {self.variant.value}>"

    @abstractmethod
    async def create_did_call(self, **kwargs) -> Any:
        """Compose a ``Did.create`` call."""

    async def build_create_did_request(self, address: str, label="did.create", **kwargs) -> TransactionRequest:
        """Compose a ``Did.create`` call wrapped as a request, signed and paid by ``address``."""
        call = await self.create_did_call(**kwargs)
        return TransactionRequest(call=call, address=address, label=label)


class LegacyDidRuntime(DidRuntime):
    variant = RuntimeVariant.legacy

    async def create_did_call(
        self,
        did: str,
        controller: str,
        verification_methods: Optional[List[dict]] = None,
        services: Optional[List[dict]] = None,
        metadata: Optional[dict] = None,
    ) -> Any:
        return await self.client.compose_call(
            "Did",
            "create",
            {
                "did": did,
                "verification_methods": verification_methods or [],
                "services": services or [],
                "controller": controller,
                "metadata": metadata or {},
            },
        )


class CurrentDidRuntime(DidRuntime):
    variant = RuntimeVariant.current

    @staticmethod
    def build_creation_details(
        did: str,
        submitter: str,
        new_key_agreement_keys: Optional[List[dict]] = None,
        new_attestation_key: Optional[dict] = None,
        new_delegation_key: Optional[dict] = None,
        new_service_details: Optional[List[dict]] = None,
    ) -> dict:
        """Creation details the DID authentication key signs over."""
        return {
            "did": did,
            "submitter": submitter,
            "new_key_agreement_keys": new_key_agreement_keys or [],
            "new_attestation_key": new_attestation_key,
            "new_delegation_key": new_delegation_key,
            "new_service_details": new_service_details or [],
        }

    async def create_did_call(self, details: dict, signature: dict) -> Any:
        """
        :param details:
            See :py:meth:`build_creation_details`

        :param signature:
            DID authentication key signature over the SCALE encoded details,
            e.g. ``{"Sr25519": "0x..."}``
        """
        return await self.client.compose_call("Did", "create", {"details": details, "signature": signature})


RUNTIMES = {
    RuntimeVariant.legacy: LegacyDidRuntime,
    RuntimeVariant.current: CurrentDidRuntime,
}


async def connect_did_runtime(client: SubstrateChainClient) -> DidRuntime:
    """Probe the connected runtime and return the matching strategy."""
    arg_count = await client.get_call_arg_count("Did", "create")
    variant = detect_runtime_variant(arg_count)
    logger.info("Did.create takes %d arguments, using %s runtime", arg_count, variant.value)
    return RUNTIMES[variant](client)
