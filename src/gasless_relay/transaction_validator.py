"""
Validation of transactions returned by relay servers.

A relay answers ``POST /relay`` with a transaction it signed but has not
necessarily broadcast yet. Before the client accepts (and rebroadcasts)
it, the transaction must be exactly the relayCall the client asked for:
addressed to the RelayHub, carrying the same request, signature and
approval data, signed by the request's relay worker, with a nonce the
relay promised not to exceed and at least the requested gas price.
"""

import logging
from typing import Optional

from gasless_relay.encoding import DecodedTransaction, decode_raw_transaction, encode_relay_call
from gasless_relay.errors import ValidationFailedError
from gasless_relay.models import RelayTransactionRequest

logger = logging.getLogger(__name__)


class TransactionValidator:
    """
    Checks signed relayCall transactions against the request that was sent.

    Args:
        relay_hub_address: Expected destination of every transaction
        chain_id: Expected chain id, when known
    """

    def __init__(self, relay_hub_address: str, chain_id: Optional[int] = None):
        self.relay_hub_address = relay_hub_address
        self.chain_id = chain_id

    def validate_relay_response(
        self,
        request: RelayTransactionRequest,
        max_acceptance_budget: int,
        raw_transaction: str,
    ) -> DecodedTransaction:
        """
        Decode and validate a relay's signed transaction.

        Args:
            request: The request sent to the relay
            max_acceptance_budget: Acceptance budget from the relay's ping
            raw_transaction: Signed transaction returned by the relay

        Returns:
            The decoded transaction

        Raises:
            ValidationFailedError: If the transaction is undecodable or does
                not match the request
        """
        try:
            tx = decode_raw_transaction(raw_transaction)
        except ValueError as e:
            raise ValidationFailedError(str(e)) from e

        relay_request = request.relay_request
        metadata = request.metadata
        expected_data = encode_relay_call(
            max_acceptance_budget,
            relay_request,
            metadata.signature,
            metadata.approval_data,
            tx.gas,
        )

        if tx.to != self.relay_hub_address:
            raise ValidationFailedError(f"wrong destination {tx.to}")
        if tx.data != expected_data:
            raise ValidationFailedError("relayCall data does not match the request")
        if tx.sender != relay_request.relay_data.relay_worker:
            raise ValidationFailedError(f"signed by {tx.sender}, not by the relay worker")
        if tx.nonce > metadata.relay_max_nonce:
            raise ValidationFailedError(
                f"nonce {tx.nonce} above the relay's max nonce {metadata.relay_max_nonce}"
            )
        if tx.gas_price < relay_request.relay_data.gas_price:
            raise ValidationFailedError(
                f"gas price {tx.gas_price} below requested {relay_request.relay_data.gas_price}"
            )
        if self.chain_id is not None and tx.chain_id is not None and tx.chain_id != self.chain_id:
            raise ValidationFailedError(f"wrong chain id {tx.chain_id}")

        logger.debug(f"Relay transaction {tx.hash} passed validation")
        return tx
