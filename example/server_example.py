from eth_account import Account

from metarelay.config import Settings, configure_logging
from metarelay.engine.events import RejectedEvent, SettledEvent
from metarelay.onchain import LocalChainGateway, LocalTarget
from metarelay.servers import FacilitatorServer


relayer_key = Account.create().key.hex()
demo_requester = Account.from_key("0x" + "11" * 32).address
counter = {"value": 0}


def increment(caller, payload):
    counter["value"] += 1
    return counter["value"].to_bytes(32, "big")


# In-process chain; drop `gateway=` and set METARELAY_RPC_URL,
# METARELAY_RELAY_ADDRESS and METARELAY_RELAYER_PRIVATE_KEY for a real node
chain = LocalChainGateway(relayer_private_key=relayer_key, fee_bps=100)
counter_address = chain.register_target(
    "0x" + "c0" * 20,
    LocalTarget(handler=increment, gas=26_000, simulate=lambda caller, payload: b""),
)
print("Counter target:", counter_address)
print("Relay contract:", chain.relay_address)

# mint + approve the relay, as a wallet would before its first request
chain.fund_requester(demo_requester, 10_000_000)

settings = Settings.from_env(chain_id=chain.chain_id)
configure_logging(settings.log_level)
app = FacilitatorServer(settings=settings, gateway=chain, title="metarelay demo")


# Optional: Add event hooks for custom logic
async def on_settled(event, deps):
    """Log every settled meta-transaction."""
    print(f"✅ Settled {event.response.transaction_id}: charged {event.response.charged_amount.total}")


async def on_rejected(event, deps):
    print(f"❌ Rejected at {event.stage}: {event.error.code}")


app.add_hook(SettledEvent, on_settled)
app.add_hook(RejectedEvent, on_rejected)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="localhost", port=8000, log_config=None)
