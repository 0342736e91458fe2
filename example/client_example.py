from eth_account import Account
import httpx

from metarelay.clients import FacilitatorClient, FacilitatorClientError

requester_key = "0x" + "11" * 32  # Replace with a key that approved the relay contract
counter_address = "0x" + "c0" * 20
increment = bytes.fromhex("d09de08a")


async def main():
    requester = Account.from_key(requester_key).address
    async with FacilitatorClient(
        base_url="http://localhost:8000",
        timeout=httpx.Timeout(60.0, read=120.0),
    ) as client:
        # top up test tokens for the relayed call
        await client.request_faucet(requester)

        try:
            return await client.facilitate(
                private_key=requester_key,
                target=counter_address,
                payload=increment,
                tier="standard",
            )
        except FacilitatorClientError as e:
            print("Rejected:", e.code, e.message)
            if e.settlement is not None:
                print("Settlement:", e.settlement.model_dump())
            raise


if __name__ == "__main__":
    import asyncio
    result = asyncio.run(main())
    print("Settled:", result.model_dump(by_alias=True))
