"""
FastAPI example: a toy relay server on an in-memory ledger.

The server owns one relay manager and one relay worker, staked and
registered on a RelayHub running on a Ledger. It answers the two relay
endpoints:

- ``GET /getaddr``: worker, manager, hub and pricing
- ``POST /relay``: sign a relayCall transaction with the worker key,
  broadcast it, and return it

Run with:
    pip install gasless-relay-sdk[examples]
    uvicorn examples.fastapi_relay_server:app --reload

Test:
    curl http://localhost:8000/getaddr
"""

import logging
from dataclasses import dataclass

from eth_account import Account
from eth_account.signers.local import LocalAccount
from fastapi import FastAPI
from fastapi.responses import JSONResponse

from gasless_relay.authenticator import SmartWallet
from gasless_relay.contract_interactor import LedgerInteractor
from gasless_relay.encoding import encode_relay_call
from gasless_relay.ledger import ETHER, Ledger, abi_method
from gasless_relay.models import RelayTransactionRequest
from gasless_relay.paymaster import AcceptEverythingPaymaster
from gasless_relay.recipient import RelayRecipient
from gasless_relay.relay_hub import RelayHub
from gasless_relay.stake_manager import StakeManager

logger = logging.getLogger(__name__)

RELAY_GAS_LIMIT = 3_000_000
MAX_ACCEPTANCE_BUDGET = 285_000
RELAY_URL = "http://localhost:8000"


class Greeter(RelayRecipient):
    """Stores the last greeting and who sent it."""

    @property
    def greeting(self):
        return self._get("greeting")

    @property
    def last_sender(self):
        return self._get("sender")

    @abi_method("greet(string)")
    def greet(self, greeting: str) -> None:
        self._set("greeting", greeting)
        self._set("sender", self._msg_sender())


@dataclass
class Deployment:
    """Everything the toy relay and its clients share."""

    ledger: Ledger
    hub: RelayHub
    interactor: LedgerInteractor
    manager: LocalAccount
    worker: LocalAccount
    paymaster: AcceptEverythingPaymaster
    greeter: Greeter


def deploy(chain_id: int = 33) -> Deployment:
    """Deploy hub, stake manager, paymaster and a greeter, and register one relay."""
    ledger = Ledger(chain_id=chain_id)
    stake_manager = StakeManager(ledger)
    hub = RelayHub(ledger, stake_manager)

    owner = Account.create()
    manager = Account.create()
    worker = Account.create()
    ledger.set_balance(owner.address, 10 * ETHER)
    ledger.transact(stake_manager.stake_for_address, manager.address, 2000, sender=owner.address, value=ETHER)
    ledger.transact(stake_manager.authorize_hub_by_owner, manager.address, hub.address, sender=owner.address)
    ledger.transact(hub.add_relay_workers, [worker.address], sender=manager.address)
    ledger.transact(hub.register_relay_server, 0, 10, RELAY_URL, sender=manager.address)

    paymaster = AcceptEverythingPaymaster(ledger, owner=owner.address, relay_hub=hub.address)
    ledger.transact(paymaster.deposit, sender=owner.address, value=ETHER)

    return Deployment(
        ledger=ledger,
        hub=hub,
        interactor=LedgerInteractor(ledger, hub, gas_price=60),
        manager=manager,
        worker=worker,
        paymaster=paymaster,
        greeter=Greeter(ledger),
    )


def new_smart_wallet(deployment: Deployment, owner: str) -> SmartWallet:
    return SmartWallet(deployment.ledger, owner)


def create_app(deployment: Deployment) -> FastAPI:
    app = FastAPI(title="Toy relay server")

    @app.get("/getaddr")
    async def get_address():
        """Ping endpoint."""
        return {
            "relayWorkerAddress": deployment.worker.address,
            "relayManagerAddress": deployment.manager.address,
            "relayHubAddress": deployment.hub.address,
            "minGasPrice": str(await deployment.interactor.get_gas_price()),
            "maxAcceptanceBudget": str(MAX_ACCEPTANCE_BUDGET),
            "chainId": deployment.ledger.chain_id,
            "ready": True,
            "version": "2.0.0",
        }

    @app.post("/relay")
    async def relay(request: RelayTransactionRequest):
        """
        Sign and broadcast a relayCall for the request.

        Errors are returned as ``{"error": ...}`` with status 200, which is
        what relay clients expect.
        """
        relay_request = request.relay_request
        if request.metadata.relay_hub_address != deployment.hub.address:
            return JSONResponse({"error": "Wrong hub address"})
        if relay_request.relay_data.relay_worker != deployment.worker.address:
            return JSONResponse({"error": "Wrong worker address"})

        data = encode_relay_call(
            MAX_ACCEPTANCE_BUDGET,
            relay_request,
            request.metadata.signature,
            request.metadata.approval_data,
            RELAY_GAS_LIMIT,
        )
        nonce = await deployment.interactor.get_transaction_count(deployment.worker.address)
        if nonce > request.metadata.relay_max_nonce:
            return JSONResponse({"error": f"Unacceptable relayMaxNonce: {request.metadata.relay_max_nonce}"})
        signed = deployment.worker.sign_transaction({
            "to": deployment.hub.address,
            "data": "0x" + data.hex(),
            "gas": RELAY_GAS_LIMIT,
            "gasPrice": relay_request.relay_data.gas_price,
            "nonce": nonce,
            "value": 0,
            "chainId": deployment.ledger.chain_id,
        })
        raw = signed.raw_transaction.to_0x_hex()
        try:
            tx_hash = await deployment.interactor.send_raw_transaction(raw)
        except ValueError as e:
            logger.warning(f"Broadcast failed: {e}")
            return JSONResponse({"error": str(e)})
        return {"signedTx": raw, "transactionHash": tx_hash}

    return app


app = create_app(deploy())
