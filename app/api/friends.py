"""Friend list and friend request endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy import or_, select
from sqlalchemy.orm import Session, selectinload

from app.api.deps import get_current_user
from app.database import get_db
from app.models import FriendLink, FriendRequestStatus, User
from app.schemas import (
    CurrentlyPlaying,
    FriendRead,
    FriendRequestCreate,
    FriendRequestList,
    FriendRequestRead,
    PublicUser,
)
from app.services import load_friend_ids

router = APIRouter(prefix="/friends", tags=["friends"])


def _serialize_public_user(user: User) -> PublicUser:
    return PublicUser(
        id=user.id,
        username=user.username,
        first_name=user.first_name,
        last_name=user.last_name,
        profile_picture=user.profile_picture,
    )


def _serialize_friend(user: User) -> FriendRead:
    currently_playing = None
    if user.currently_playing_song:
        currently_playing = CurrentlyPlaying(
            song=user.currently_playing_song,
            timestamp=user.currently_playing_at,
        )
    return FriendRead(
        **_serialize_public_user(user).model_dump(),
        is_online=user.is_online,
        last_seen=user.last_seen,
        currently_playing=currently_playing,
    )


def _serialize_request(link: FriendLink) -> FriendRequestRead:
    return FriendRequestRead(
        id=link.id,
        requester=_serialize_public_user(link.requester),
        addressee=_serialize_public_user(link.addressee),
        status=link.status,
        created_at=link.created_at,
        responded_at=link.responded_at,
    )


def _get_friend_link(user_id: int, other_id: int, db: Session) -> FriendLink | None:
    """Return the link between two users, preferring one that is not declined.

    Crossing requests may leave one row per direction.
    """

    stmt = select(FriendLink).where(
        or_(
            (FriendLink.requester_id == user_id) & (FriendLink.addressee_id == other_id),
            (FriendLink.requester_id == other_id) & (FriendLink.addressee_id == user_id),
        )
    ).order_by(FriendLink.id)
    links = db.execute(stmt).scalars().all()
    for link in links:
        if link.status != FriendRequestStatus.DECLINED:
            return link
    # Reuse the declined row already pointing the same way, if any.
    for link in links:
        if link.requester_id == user_id:
            return link
    return links[0] if links else None


def _get_pending_request_for(request_id: int, user: User, db: Session) -> FriendLink:
    link = db.get(FriendLink, request_id)
    if link is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Request not found")
    if link.addressee_id != user.id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not authorized")
    if link.status != FriendRequestStatus.PENDING:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Request already answered")
    return link


@router.get("", response_model=list[FriendRead])
def list_friends(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> list[FriendRead]:
    """Return accepted friends with their presence and currently playing track."""

    friend_ids = load_friend_ids(current_user.id, db)
    if not friend_ids:
        return []
    users = db.execute(select(User).where(User.id.in_(friend_ids))).scalars().all()
    friends = [_serialize_friend(user) for user in users]
    friends.sort(key=lambda friend: friend.username.lower())
    return friends


@router.get("/requests", response_model=FriendRequestList)
def list_friend_requests(
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> FriendRequestList:
    """Return incoming and outgoing pending friend requests."""

    stmt = (
        select(FriendLink)
        .where(
            FriendLink.status == FriendRequestStatus.PENDING,
            or_(
                FriendLink.requester_id == current_user.id,
                FriendLink.addressee_id == current_user.id,
            ),
        )
        .options(selectinload(FriendLink.requester), selectinload(FriendLink.addressee))
        .order_by(FriendLink.created_at.asc(), FriendLink.id.asc())
    )
    incoming: list[FriendRequestRead] = []
    outgoing: list[FriendRequestRead] = []
    for link in db.execute(stmt).scalars():
        if link.addressee_id == current_user.id:
            incoming.append(_serialize_request(link))
        else:
            outgoing.append(_serialize_request(link))
    return FriendRequestList(incoming=incoming, outgoing=outgoing)


@router.post("/requests", response_model=FriendRequestRead, status_code=status.HTTP_201_CREATED)
def create_friend_request(
    payload: FriendRequestCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> FriendRequestRead:
    """Send a new friend request."""

    if payload.receiver_id == current_user.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot befriend yourself")
    target = db.get(User, payload.receiver_id)
    if target is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    link = _get_friend_link(current_user.id, target.id, db)
    if link is not None and link.status != FriendRequestStatus.DECLINED:
        if link.status == FriendRequestStatus.ACCEPTED:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Already friends")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Friend request already exists")

    if link is None:
        link = FriendLink(requester_id=current_user.id, addressee_id=target.id)
        db.add(link)
    else:
        # A declined request may be retried by either side.
        link.requester_id = current_user.id
        link.addressee_id = target.id
        link.responded_at = None
    link.status = FriendRequestStatus.PENDING
    db.commit()
    db.refresh(link)
    return _serialize_request(link)


@router.post("/requests/{request_id}/accept", response_model=FriendRequestRead)
def accept_friend_request(
    request_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> FriendRequestRead:
    """Accept an incoming request, making both users friends of each other."""

    link = _get_pending_request_for(request_id, current_user, db)
    link.status = FriendRequestStatus.ACCEPTED
    link.responded_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(link)
    return _serialize_request(link)


@router.post("/requests/{request_id}/decline", response_model=FriendRequestRead)
def decline_friend_request(
    request_id: int,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> FriendRequestRead:
    """Decline an incoming request."""

    link = _get_pending_request_for(request_id, current_user, db)
    link.status = FriendRequestStatus.DECLINED
    link.responded_at = datetime.now(timezone.utc)
    db.commit()
    db.refresh(link)
    return _serialize_request(link)
