from __future__ import annotations

from typing import List, NoReturn, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Path, Query, status

from errors import ReservationError
from models import (
    Actor,
    CreateReservationIn,
    ListScope,
    ReservationOut,
    RoomIn,
    RoomOut,
    RoomUpdateIn,
    UpdateReservationIn,
)
from services import ReservationEngine, describe_error


STATUS_BY_CATEGORY = {
    "validation": status.HTTP_422_UNPROCESSABLE_CONTENT,
    "not_found": status.HTTP_404_NOT_FOUND,
    "forbidden": status.HTTP_403_FORBIDDEN,
    "conflict": status.HTTP_409_CONFLICT,
    "busy": status.HTTP_503_SERVICE_UNAVAILABLE,
}

RETRY_AFTER_SECONDS = "1"


def raise_http(error: ReservationError) -> NoReturn:
    info = describe_error(error)
    headers = {"Retry-After": RETRY_AFTER_SECONDS} if info.retryable else None
    raise HTTPException(
        status_code=STATUS_BY_CATEGORY.get(info.category, status.HTTP_400_BAD_REQUEST),
        detail=info.to_dict(),
        headers=headers,
    ) from error


def create_router(engine: ReservationEngine) -> APIRouter:
    router = APIRouter()

    # Identity is verified upstream (auth proxy) and forwarded as headers.
    def current_actor(
        x_user_id: Optional[str] = Header(None),
        x_user_role: Optional[str] = Header(None),
    ) -> Actor:
        if x_user_id is None or not x_user_id.strip():
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Missing authenticated user.",
            )
        try:
            return engine.actor_from_session(x_user_id, x_user_role)
        except ReservationError as error:
            raise_http(error)

    # -----------------------------
    # Reservations
    # -----------------------------
    @router.post("/reservations", response_model=ReservationOut, status_code=status.HTTP_201_CREATED)
    def create_reservation(
        payload: CreateReservationIn, actor: Actor = Depends(current_actor)
    ) -> ReservationOut:
        try:
            return engine.create_reservation(actor, payload)
        except ReservationError as error:
            raise_http(error)

    @router.get("/reservations", response_model=List[ReservationOut])
    def list_reservations(
        room_id: Optional[str] = Query(None, min_length=1),
        scope: ListScope = Query(ListScope.UPCOMING),
        actor: Actor = Depends(current_actor),
    ) -> List[ReservationOut]:
        return engine.list_reservations(actor, room_id=room_id, scope=scope)

    @router.get("/reservations/{reservation_id}", response_model=ReservationOut)
    def get_reservation(
        reservation_id: str = Path(..., min_length=1), actor: Actor = Depends(current_actor)
    ) -> ReservationOut:
        try:
            return engine.get_reservation(actor, reservation_id)
        except ReservationError as error:
            raise_http(error)

    @router.patch("/reservations/{reservation_id}", response_model=ReservationOut)
    def update_reservation(
        payload: UpdateReservationIn,
        reservation_id: str = Path(..., min_length=1),
        actor: Actor = Depends(current_actor),
    ) -> ReservationOut:
        try:
            return engine.update_reservation(actor, reservation_id, payload)
        except ReservationError as error:
            raise_http(error)

    @router.delete("/reservations/{reservation_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_reservation(
        reservation_id: str = Path(..., min_length=1), actor: Actor = Depends(current_actor)
    ) -> None:
        try:
            engine.delete_reservation(actor, reservation_id)
        except ReservationError as error:
            raise_http(error)
        return None

    @router.get("/rooms/{room_id}/reservations", response_model=List[ReservationOut])
    def list_reservations_for_room(
        room_id: str = Path(..., min_length=1),
        scope: ListScope = Query(ListScope.ALL),
        actor: Actor = Depends(current_actor),
    ) -> List[ReservationOut]:
        try:
            engine.get_room(actor, room_id)
        except ReservationError as error:
            raise_http(error)
        return engine.list_reservations(actor, room_id=room_id, scope=scope)

    # -----------------------------
    # Rooms
    # -----------------------------
    @router.get("/rooms", response_model=List[RoomOut])
    def list_rooms(actor: Actor = Depends(current_actor)) -> List[RoomOut]:
        return engine.list_rooms(actor)

    @router.post("/rooms", response_model=RoomOut, status_code=status.HTTP_201_CREATED)
    def create_room(payload: RoomIn, actor: Actor = Depends(current_actor)) -> RoomOut:
        try:
            return engine.create_room(actor, payload)
        except ReservationError as error:
            raise_http(error)

    @router.get("/rooms/{room_id}", response_model=RoomOut)
    def get_room(room_id: str = Path(..., min_length=1), actor: Actor = Depends(current_actor)) -> RoomOut:
        try:
            return engine.get_room(actor, room_id)
        except ReservationError as error:
            raise_http(error)

    @router.patch("/rooms/{room_id}", response_model=RoomOut)
    def update_room(
        payload: RoomUpdateIn,
        room_id: str = Path(..., min_length=1),
        actor: Actor = Depends(current_actor),
    ) -> RoomOut:
        try:
            return engine.update_room(actor, room_id, payload)
        except ReservationError as error:
            raise_http(error)

    @router.delete("/rooms/{room_id}", status_code=status.HTTP_204_NO_CONTENT)
    def delete_room(room_id: str = Path(..., min_length=1), actor: Actor = Depends(current_actor)) -> None:
        try:
            engine.delete_room(actor, room_id)
        except ReservationError as error:
            raise_http(error)
        return None

    return router
