"""
Numbers Router
==============
Endpoints for giving accounts a phone line and managing the line pool.

Endpoints:
- POST /numbers/claim: Claims a line from the pool and connects it to the account's assistant.
- POST /numbers/release: Disconnects the account's line (the account keeps the number).
- POST /numbers/return: Disconnects the line and returns it to the pool.
- POST /numbers/reconnect: Re-links a line the account already owns.
- GET /numbers/pool: Pool statistics.
- POST /numbers/pool/import: Imports numbers the Twilio account already owns.
- POST /numbers/pool/purchase: Buys new numbers for the pool.

Each account endpoint accepts account_id in a JSON body, a form or the query
string (aliases such as accountId are accepted too).
Provider and database work runs in worker threads so a slow upstream never
stalls the event loop.
"""

import asyncio

from fastapi import APIRouter, HTTPException, Request

from services import line_allocator, line_deallocator, number_pool
from services.exceptions import LineServiceError
from utils.logger import log_info, log_error
from utils.request_parser import first_value, parse_incoming_payload, require_account_id

router = APIRouter(prefix="/numbers", tags=["numbers"])


def _http_error(e: LineServiceError) -> HTTPException:
    log_error(e.message, e.details)
    return HTTPException(status_code=e.status_code, detail=e.message)


@router.post("/claim")
async def claim_number(request: Request):
    """
    Gives an account a phone number from the pool.

    Calling it again returns the number the account already has.

    Returns:
        dict: The number and whether it was already assigned.
    """
    payload = await parse_incoming_payload(request)
    account_id = require_account_id(payload)
    routing_id = first_value(payload, ["assistant_id", "assistantId", "routing_id"])

    log_info(f"Claiming a number for account {account_id}")
    try:
        result = await asyncio.to_thread(line_allocator.claim_line, account_id, routing_id=routing_id)
    except LineServiceError as e:
        raise _http_error(e)

    return {
        "status": "success",
        "phone_number": result.number,
        "already_assigned": result.already_assigned,
        "message": "Phone number already assigned" if result.already_assigned else "Phone number assigned",
    }


@router.post("/release")
async def release_number(request: Request):
    """Stops routing calls to the account's number; the account keeps it."""
    payload = await parse_incoming_payload(request)
    account_id = require_account_id(payload)

    try:
        result = await asyncio.to_thread(line_deallocator.deallocate_line, account_id)
    except LineServiceError as e:
        raise _http_error(e)

    return {"status": "success", "phone_number": result["number"], "unlinked": result["unlinked"]}


@router.post("/return")
async def return_number(request: Request):
    """Disconnects the account's number and puts it back in the pool."""
    payload = await parse_incoming_payload(request)
    account_id = require_account_id(payload)

    try:
        result = await asyncio.to_thread(line_deallocator.release_line, account_id)
    except LineServiceError as e:
        raise _http_error(e)

    return {"status": "success", **result}


@router.post("/reconnect")
async def reconnect_number(request: Request):
    payload = await parse_incoming_payload(request)
    account_id = require_account_id(payload)
    routing_id = first_value(payload, ["assistant_id", "assistantId", "routing_id"])

    try:
        result = await asyncio.to_thread(line_allocator.relink_line, account_id, routing_id=routing_id)
    except LineServiceError as e:
        raise _http_error(e)

    return {
        "status": "success",
        "phone_number": result.number,
        "message": "Phone number already connected" if result.already_assigned else "Phone number reconnected",
    }

# ---------------------------------------------------------
# Pool management
# ---------------------------------------------------------

@router.get("/pool")
async def pool_status():
    return await asyncio.to_thread(number_pool.get_pool_status)


@router.post("/pool/import")
async def import_pool_numbers():
    try:
        result = await asyncio.to_thread(number_pool.import_owned_numbers)
    except LineServiceError as e:
        raise _http_error(e)
    return {"status": "success", **result}


@router.post("/pool/purchase")
async def purchase_pool_numbers(request: Request):
    payload = await parse_incoming_payload(request)
    area_code = first_value(payload, ["area_code", "areaCode"])
    try:
        count = int(first_value(payload, ["count", "quantity"]) or 1)
    except ValueError:
        raise HTTPException(status_code=422, detail="count must be a number")

    try:
        purchased = await asyncio.to_thread(number_pool.purchase_numbers, count=count, area_code=area_code)
    except LineServiceError as e:
        raise _http_error(e)
    return {"status": "success", "purchased": purchased}
