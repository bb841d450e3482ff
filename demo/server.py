import os

from dotenv import load_dotenv

from x402_autopay import PaymentRequirement, create_paid_resource_app

load_dotenv()

PORT = int(os.getenv("PORT", "3000"))
PAY_TO_ADDRESS = os.getenv("PAY_TO_ADDRESS")
NETWORK = os.getenv("NETWORK", "sepolia")
ASSET = os.getenv("ASSET", "USDC")
PRICE = os.getenv("PRICE", "0.01")

if not PAY_TO_ADDRESS:
    raise SystemExit("PAY_TO_ADDRESS env var is required")

app = create_paid_resource_app(
    [
        PaymentRequirement(
            "exact",
            NETWORK,
            ASSET,
            PRICE,
            PAY_TO_ADDRESS,
            extras={"description": "Access to premium data endpoint"},
        )
    ],
    path="/api/premium-data",
    message="Payment required for premium data",
    content={"secret": "This is protected content behind a paywall"},
)


@app.get("/")
async def root():
    return {
        "message": "x402 Demo Server",
        "endpoints": {
            "free": ["/", "/health"],
            "protected": [
                {
                    "path": "/api/premium-data",
                    "price": f"{PRICE} {ASSET} on {NETWORK}",
                    "description": "Premium data endpoint (requires payment)",
                }
            ],
        },
    }


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=PORT)
