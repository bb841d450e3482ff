import asyncio
import logging
import os

from dotenv import load_dotenv

from x402_autopay import (
    FacilitatorClient,
    FacilitatorConfig,
    HttpxTransport,
    ProtocolEngine,
    RpcWallet,
    X402Error,
    load_engine_config,
)

load_dotenv()
logging.basicConfig(level=logging.INFO)

PRIVATE_KEY = os.getenv("PRIVATE_KEY")
if not PRIVATE_KEY or not PRIVATE_KEY.startswith("0x"):
    raise SystemExit("PRIVATE_KEY env var must be set and start with 0x")

API_URL = os.getenv("API_URL", "http://localhost:3000")
ENDPOINT = f"{API_URL}/api/premium-data"


async def main() -> None:
    config = load_engine_config()
    wallet = RpcWallet(PRIVATE_KEY, request_timeout=config.wallet_timeout or 30.0)
    transport = HttpxTransport()
    facilitator = None
    if config.facilitator_url:
        facilitator = FacilitatorClient(
            FacilitatorConfig(url=config.facilitator_url, api_key=config.facilitator_api_key, retry=config.retry)
        )
    engine = ProtocolEngine(transport, wallet, config=config, facilitator=facilitator)
    try:
        response = await engine.get(ENDPOINT, timeout=config.request_timeout)
        print("Status:", response.status_code)
        if response.payment is not None:
            print("Paid with:", response.payment.transaction_hash)
        print("Body:", response.text)
    except X402Error as exc:
        print("Payment flow failed:", exc.to_dict())
    finally:
        await engine.wait_for_pending_payments()
        if facilitator is not None:
            await facilitator.aclose()
        await transport.aclose()
        await wallet.aclose()


if __name__ == "__main__":
    asyncio.run(main())
