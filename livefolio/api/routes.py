import time
from functools import partial

from fastapi import APIRouter, HTTPException, Request

from livefolio.errors import PriceSourceUnavailableError
from livefolio.schemas.portfolio import ValuationRequest, ValuationResponse
from livefolio.schemas.stream import SubscribeRequest
from livefolio.services.lot_ledger import LotLedger, SellPolicy
from livefolio.services.market_hours import market_has_opened_since, market_status
from livefolio.services.valuation import value_portfolio

router = APIRouter()


def _price_source(request: Request):
    source = getattr(request.app.state, 'price_source', None)
    if source is None:
        raise HTTPException(status_code=503, detail='PRICE_SOURCE_NOT_CONFIGURED')
    return source


@router.get('/prices')
def list_prices(request: Request):
    cache = request.app.state.price_cache
    return {symbol: quote.model_dump() for symbol, quote in sorted(cache.snapshot().items())}


@router.get('/prices/changed')
def changed_symbols(request: Request):
    return sorted(request.app.state.change_animator.active_symbols())


@router.get('/prices/{symbol}')
def get_price(symbol: str, request: Request):
    quote = request.app.state.price_cache.get(symbol.upper())
    if quote is None:
        raise HTTPException(status_code=404, detail='price not found')
    return quote.model_dump()


@router.post('/stream/subscribe')
def subscribe(req: SubscribeRequest, request: Request):
    source = _price_source(request)
    source.subscribe(req.symbols)
    return {
        'symbols': sorted({s.strip().upper() for s in req.symbols if s.strip()}),
        'ready_state': source.ready_state(),
    }


@router.post('/session/logout')
def logout(request: Request):
    source = getattr(request.app.state, 'price_source', None)
    if source is not None:
        source.close()
    request.app.state.ingest_worker.teardown()
    request.app.state.ledgers.clear()
    return {'ok': True}


def _new_ledger(request: Request, sell_policy: SellPolicy) -> LotLedger:
    opened_since = partial(market_has_opened_since, tz=request.app.state.market_tz)
    return LotLedger(sell_policy=sell_policy, opened_since=opened_since)


def _valuation(request: Request, lots, cash_balance: float) -> ValuationResponse:
    holdings, summary = value_portfolio(lots, request.app.state.price_cache, cash_balance=cash_balance)
    return ValuationResponse(holdings=holdings, summary=summary, timestamp=int(time.time() * 1000))


@router.post('/portfolio/valuation', response_model=ValuationResponse)
def portfolio_valuation(req: ValuationRequest, request: Request):
    lots = _new_ledger(request, req.sell_policy).build(req.transactions)
    return _valuation(request, lots, req.cash_balance)


@router.get('/portfolio/{user_id}/valuation', response_model=ValuationResponse)
def user_portfolio_valuation(
    user_id: int,
    request: Request,
    cash_balance: float = 0.0,
    sell_policy: SellPolicy = 'ignore',
    reload: bool = False,
):
    rest_client = request.app.state.rest_client
    if rest_client is None:
        raise HTTPException(status_code=503, detail='REST_CLIENT_NOT_CONFIGURED')

    ledgers = request.app.state.ledgers
    ledger = ledgers.get((user_id, sell_policy))
    if ledger is None or reload:
        ledger = _new_ledger(request, sell_policy)
        try:
            ledger.load(rest_client, user_id)
        except PriceSourceUnavailableError as exc:
            raise HTTPException(status_code=502, detail='TRANSACTION_HISTORY_UNAVAILABLE') from exc
        ledgers[(user_id, sell_policy)] = ledger
    else:
        ledger.refresh()
    return _valuation(request, ledger.lots, cash_balance)


@router.get('/market/status')
def get_market_status(request: Request):
    return market_status(tz=request.app.state.market_tz).model_dump()


@router.get('/metrics/stream')
def stream_metrics(request: Request):
    metrics = request.app.state.ingest_worker.metrics()
    source = getattr(request.app.state, 'price_source', None)
    if source is not None:
        metrics.update(source.metrics())
    return metrics
