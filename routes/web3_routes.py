"""
Web3 API Routes
FastAPI routes for wallet connections, crypto payments, NFT receipts and loyalty tokens
"""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from services.web3_errors import Web3ErrorKind
from services.web3_service import OperationResult, Web3Service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/web3", tags=["web3"])

ERROR_STATUS_CODES = {
    Web3ErrorKind.INVALID_ADDRESS.value: 400,
    Web3ErrorKind.INVALID_AMOUNT.value: 400,
    Web3ErrorKind.UNSUPPORTED_CURRENCY.value: 400,
    Web3ErrorKind.NOT_FOUND.value: 404,
    Web3ErrorKind.ADDRESS_IN_USE.value: 409,
    Web3ErrorKind.SUBMISSION_ERROR.value: 502,
    Web3ErrorKind.NODE_UNAVAILABLE.value: 503,
    Web3ErrorKind.RATE_UNAVAILABLE.value: 503,
    Web3ErrorKind.NOT_CONFIGURED.value: 503,
}


class ConnectWalletRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_id: str = Field(alias="customerId")
    wallet_address: str = Field(alias="walletAddress")
    wallet_type: Optional[str] = Field(default=None, alias="walletType")


class CryptoPaymentRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    sale_id: str = Field(alias="saleId")
    wallet_address: str = Field(alias="walletAddress")
    amount: Decimal
    currency: str = "ETH"


class IssueLoyaltyRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    customer_id: str = Field(alias="customerId")
    amount: Decimal


def get_web3_service(request: Request) -> Web3Service:
    """Service instance wired by the application lifespan"""
    return request.app.state.web3_service


def _respond(result: OperationResult) -> JSONResponse:
    status_code = 200 if result.ok else ERROR_STATUS_CODES.get(result.error_kind, 500)
    return JSONResponse(status_code=status_code, content=result.to_dict())


@router.post("/wallet/connect")
async def connect_wallet(body: ConnectWalletRequest, service: Web3Service = Depends(get_web3_service)):
    """Bind (or rebind) a customer's wallet address"""
    result = await service.connect_wallet(body.customer_id, body.wallet_address, body.wallet_type)
    return _respond(result)


@router.get("/wallet/{customer_id}")
async def get_wallet_info(customer_id: str, service: Web3Service = Depends(get_web3_service)):
    return _respond(await service.get_wallet_info(customer_id))


@router.post("/payment/crypto")
async def process_crypto_payment(body: CryptoPaymentRequest, service: Web3Service = Depends(get_web3_service)):
    """Settle a crypto payment against a sale; waits for inclusion"""
    result = await service.process_payment(body.sale_id, body.wallet_address, body.amount, body.currency)
    return _respond(result)


@router.post("/payment/{payment_id}/verify")
async def verify_crypto_payment(payment_id: int, service: Web3Service = Depends(get_web3_service)):
    """Re-query confirmations for a recorded payment"""
    return _respond(await service.verify_payment(payment_id))


@router.post("/nft/generate/{sale_id}")
async def generate_nft_receipt(sale_id: str, service: Web3Service = Depends(get_web3_service)):
    """Mint the receipt token for a sale (idempotent per sale)"""
    return _respond(await service.mint_receipt(sale_id))


@router.post("/loyalty/issue")
async def issue_loyalty_tokens(body: IssueLoyaltyRequest, service: Web3Service = Depends(get_web3_service)):
    return _respond(await service.issue_reward(body.customer_id, body.amount))


@router.get("/loyalty/{customer_id}/balance")
async def get_loyalty_balance(customer_id: str, service: Web3Service = Depends(get_web3_service)):
    """On-chain loyalty token balance"""
    return _respond(await service.get_loyalty_balance(customer_id))


@router.get("/health")
async def web3_health():
    """Health check for Web3 endpoints"""
    return {"status": "healthy", "service": "web3"}
