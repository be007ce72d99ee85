from fastapi import Request

from app.services.answer_service import AnswerAggregator
from app.services.lobby_manager import LobbyManager


def get_lobby_manager(request: Request) -> LobbyManager:
    return request.app.state.coordinator.manager


def get_answer_aggregator(request: Request) -> AnswerAggregator:
    return request.app.state.coordinator.aggregator
