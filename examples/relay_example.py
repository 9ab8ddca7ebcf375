"""
End-to-end relaying against the toy relay server.

A fresh account with no native balance calls ``Greeter.greet`` through its
smart wallet; the relay's worker pays the gas and the paymaster pays the
relay. The relay server runs in-process through ``httpx.ASGITransport``.

Run with:
    pip install gasless-relay-sdk[examples]
    python -m examples.relay_example
"""

import asyncio
import logging

import httpx
from eth_account import Account

from gasless_relay import RelayClient, RelayClientConfig, TransactionDetails, dump_relaying_result
from gasless_relay.encoding import encode_call
from gasless_relay.http_client import RelayHttpClient

from examples.fastapi_relay_server import create_app, deploy, new_smart_wallet


async def main() -> None:
    logging.basicConfig(level=logging.INFO)

    deployment = deploy()
    app = create_app(deployment)
    sender = Account.create()
    wallet = new_smart_wallet(deployment, sender.address)

    config = RelayClientConfig(relay_hub_address=deployment.hub.address)
    http_client = RelayHttpClient(transport=httpx.ASGITransport(app=app))

    async with RelayClient(config, deployment.interactor, http_client=http_client) as client:
        client.add_account(sender.key)
        client.register_event_listener(print)

        result = await client.relay_transaction(
            TransactionDetails(
                from_=sender.address,
                to=deployment.greeter.address,
                data=encode_call("greet(string)", ["string"], ["hello from a gasless account"]),
                forwarder=wallet.address,
                paymaster=deployment.paymaster.address,
            )
        )

    print(dump_relaying_result(result))
    if result.transaction is not None:
        print(f"Greeting: {deployment.greeter.greeting}")
        print(f"Sender seen by the greeter: {deployment.greeter.last_sender}")
        print(f"Paymaster deposit left: {deployment.hub.balance_of(deployment.paymaster.address)}")


if __name__ == "__main__":
    asyncio.run(main())
