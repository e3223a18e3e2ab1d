from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from assets import get_asset
from oracle_client import OracleClient, get_oracle_client, is_valid_price
from schemas import PriceOut

router = APIRouter()


@router.get("/prices/{symbol}", response_model=PriceOut)
async def get_price(symbol: str, oracle: OracleClient = Depends(get_oracle_client)):
    asset = get_asset(symbol)
    if asset is None:
        raise HTTPException(404, "unsupported asset")

    details = await oracle.get_details(asset.coingecko_id)
    if is_valid_price(details["price"]):
        return PriceOut(
            symbol=asset.symbol,
            ticker=asset.ticker,
            price=details["price"],
            image_url=details["image_url"],
        )

    body = {"detail": f"price unavailable for {asset.ticker}"}
    last = oracle.last_known_good(asset.coingecko_id)
    if last:
        cached, age = last
        body["last_known_good"] = PriceOut(
            symbol=asset.symbol,
            ticker=asset.ticker,
            price=cached["price"],
            image_url=cached["image_url"],
            stale=True,
            age_seconds=round(age, 3),
        ).model_dump()
    return JSONResponse(status_code=503, content=body)
