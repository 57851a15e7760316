"""
Minimal in-memory wallet provider exposing the Circle-style endpoints
the spendguard provider client talks to.
"""

import uuid
from decimal import Decimal

import uvicorn
from fastapi import FastAPI, Header, HTTPException
from pydantic import BaseModel

app = FastAPI()

API_KEY = "local-test-key"
USDC_TOKEN_ID = "usdc-local"

wallets: dict[str, Decimal] = {"wallet-1": Decimal("30.00")}
transfers: dict[str, dict] = {}


class TransferBody(BaseModel):
    idempotencyKey: str
    walletId: str
    tokenId: str
    destinationAddress: str
    amounts: list[str]
    feeLevel: str = "MEDIUM"


def _check_auth(authorization: str | None) -> None:
    if authorization != f"Bearer {API_KEY}":
        raise HTTPException(status_code=401, detail="invalid api key")


@app.get("/v1/w3s/wallets/{wallet_id}/balances")
async def balances(wallet_id: str, authorization: str | None = Header(default=None)):
    _check_auth(authorization)
    if wallet_id not in wallets:
        raise HTTPException(status_code=404, detail="wallet not found")
    return {
        "data": {
            "tokenBalances": [
                {
                    "token": {"id": USDC_TOKEN_ID, "symbol": "USDC", "decimals": 6},
                    "amount": str(wallets[wallet_id]),
                }
            ]
        }
    }


@app.post("/v1/w3s/developer/transactions/transfer", status_code=201)
async def transfer(body: TransferBody, authorization: str | None = Header(default=None)):
    _check_auth(authorization)
    if body.idempotencyKey in transfers:
        return {"data": transfers[body.idempotencyKey]}
    if body.walletId not in wallets or body.tokenId != USDC_TOKEN_ID:
        raise HTTPException(status_code=404, detail="wallet or token not found")

    amount = Decimal(body.amounts[0])
    state = "COMPLETE"
    if amount > wallets[body.walletId]:
        state = "DENIED"
    else:
        wallets[body.walletId] -= amount

    result = {"id": str(uuid.uuid4()), "state": state}
    transfers[body.idempotencyKey] = result
    return {"data": result}


if __name__ == "__main__":
    uvicorn.run(app, host="127.0.0.1", port=8410)
