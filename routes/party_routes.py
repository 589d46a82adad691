from fastapi import APIRouter, Depends, Query, Response, status

from models import (
    Content,
    CreatePartyRequest,
    CreatePartyResponse,
    JoinPartyRequest,
    PartyCodeRequest,
    PartyResponse,
    PlaybackStateRequest,
)
from routes.auth_routes import get_current_user_id
from services.parties import PartyService
from utils.deps import get_party_service

router = APIRouter()

# Create a new party (вызывающий становится хостом)
@router.post("/create", response_model=CreatePartyResponse)
async def create_party(
    payload: CreatePartyRequest,
    parties: PartyService = Depends(get_party_service),
):
    party = parties.create_party(
        user_id=payload.user_id,
        display_name=payload.display_name,
        platform=payload.platform,
        content=Content(
            content_id=payload.content_id,
            content_title=payload.content_title,
            video_url=payload.video_url,
        ),
    )
    return CreatePartyResponse(code=party.code, party=party)

# Join by code
@router.post("/join", response_model=PartyResponse)
async def join_party(
    payload: JoinPartyRequest,
    parties: PartyService = Depends(get_party_service),
):
    party = parties.join_party(payload.code, payload.user_id, payload.display_name, payload.platform)
    return PartyResponse(party=party)

# Host heartbeat
@router.post("/state", status_code=status.HTTP_200_OK)
async def update_playback_state(
    payload: PlaybackStateRequest,
    parties: PartyService = Depends(get_party_service),
):
    parties.update_playback_state(payload.code, payload.status, payload.current_time, payload.user_id)
    return Response(status_code=status.HTTP_200_OK)

# Get party state
@router.get("", response_model=PartyResponse)
async def get_party(
    code: str = Query(..., min_length=1),
    parties: PartyService = Depends(get_party_service),
):
    return PartyResponse(party=parties.get_party(code))

@router.post("/leave", response_model=PartyResponse)
async def leave_party(
    payload: PartyCodeRequest,
    user_id: str = Depends(get_current_user_id),
    parties: PartyService = Depends(get_party_service),
):
    parties.leave_party(payload.code, user_id)
    return PartyResponse(party=parties.get_party(payload.code))

@router.post("/end", response_model=PartyResponse)
async def end_party(
    payload: PartyCodeRequest,
    user_id: str = Depends(get_current_user_id),
    parties: PartyService = Depends(get_party_service),
):
    return PartyResponse(party=parties.end_party(payload.code, user_id))
