from fastapi import APIRouter, Request

from ..services import bitcoin

router = APIRouter(
    tags=["Bitcoin"]
)


@router.get("/price", summary="Get current Bitcoin price in USD")
async def get_current_bitcoin_price(request: Request):
    """
    Endpoint to retrieve the current Bitcoin price (USD).
    Served from the app's price cache; falls back from Coinbase to Kraken
    and finally to the last known price. 502 if nothing is available.
    """
    price = await bitcoin.get_current_price(request.app.state.price_cache)
    return {"USD": price}
