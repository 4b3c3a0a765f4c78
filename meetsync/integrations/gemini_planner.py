"""
Gemini プランナーゲートウェイ

参加者の予定・会議室一覧をプロンプトにまとめ、JSON スキーマ指定の
構造化出力で候補を1件受け取ります。
"""

import json
import logging
import os
from typing import Any, Dict, Optional

from google import genai
from google.genai import types
from pydantic import BaseModel, Field, ValidationError

from ..models import PlanningFailure
from .planner_gateway import PlannerGateway, PlanningCandidate, PlanningRequest

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.5-pro"


class MeetingProposalSchema(BaseModel):
    """モデルに要求するレスポンススキーマ"""
    startTime: str = Field(..., description="The proposed start time for the meeting in ISO 8601 format.")
    endTime: str = Field(..., description="The proposed end time for the meeting in ISO 8601 format.")
    roomId: str = Field(..., description="The ID of the chosen room from the provided list of available rooms.")
    reasoning: str = Field(
        ...,
        description="A brief, friendly explanation for why this time and room were chosen."
    )


PROMPT_TEMPLATE = """
You are a smart scheduling assistant for students at Georgia Tech. Your task is to find the best possible time and location for a study session.

Here is the required information:
- Earliest allowed start: {not_before}
- Meeting Duration: {duration} minutes
- Participants: {participants}
- Participant Schedules (events they are busy, with priority): {calendars}
- Available Study Rooms: {rooms}
- Room bookings already made (room cannot be used at these times): {bookings}
- Slots already rejected (never propose these again): {excluded}
- Requester location: {location}

Constraints and Preferences:
1. The meeting must not overlap any participant event whose priority is HIGH. MEDIUM and LOW events may be overlapped only if nothing else works.
2. The chosen room must be one of the listed rooms and have enough capacity for all participants.
3. Consider a reasonable time, ideally between 9:00 AM and 8:00 PM.
4. Try to find a time as soon as possible.
5. The reasoning should be concise and helpful.

Please provide your answer in JSON format that adheres to the specified schema.
"""


class GeminiPlannerGateway(PlannerGateway):
    """Gemini による候補選定"""

    name = "gemini"

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: Optional[str] = None,
        client: Optional[Any] = None
    ):
        """
        Gemini プランナーを初期化

        Args:
            model: モデル名
            api_key: APIキー（未指定時は GOOGLE_API_KEY / GEMINI_API_KEY）
            client: genai.Client 互換クライアント（テスト用に注入可能）
        """
        self.model = model
        self.api_key = api_key or os.getenv("GOOGLE_API_KEY") or os.getenv("GEMINI_API_KEY")
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            if not self.api_key:
                raise PlanningFailure("GOOGLE_API_KEY または GEMINI_API_KEY が設定されていません")
            self._client = genai.Client(api_key=self.api_key)
        return self._client

    def build_prompt(self, request: PlanningRequest) -> str:
        """リクエストからプロンプトを作成"""
        calendars: Dict[str, Any] = {
            user_id: [
                {
                    "title": interval.title,
                    "start": interval.slot.start_time.isoformat(),
                    "end": interval.slot.end_time.isoformat(),
                    "priority": interval.priority.value,
                }
                for interval in intervals
            ]
            for user_id, intervals in request.busy_intervals.items()
        }
        rooms = [
            {
                "id": room.id,
                "building": room.building,
                "name": room.name,
                "capacity": room.capacity,
                "location": {"lat": room.location.lat, "lng": room.location.lng},
            }
            for room in request.candidate_rooms
        ]
        bookings = [
            {"roomId": booking.room_id, **booking.slot.to_dict()}
            for booking in request.existing_bookings
        ]
        location = (
            {"lat": request.requester_location.lat, "lng": request.requester_location.lng}
            if request.requester_location else None
        )

        return PROMPT_TEMPLATE.format(
            not_before=request.not_before.isoformat(),
            duration=request.duration_minutes,
            participants=json.dumps([{"id": p.id, "name": p.name} for p in request.participants], ensure_ascii=False),
            calendars=json.dumps(calendars, ensure_ascii=False),
            rooms=json.dumps(rooms, ensure_ascii=False),
            bookings=json.dumps(bookings),
            excluded=json.dumps([slot.to_dict() for slot in request.excluded_slots]),
            location=json.dumps(location),
        )

    async def propose(self, request: PlanningRequest) -> Optional[PlanningCandidate]:
        prompt = self.build_prompt(request)
        logger.info(f"Gemini 呼び出し: model={self.model} 参加者={len(request.participants)}人")

        response = await self.client.aio.models.generate_content(
            model=self.model,
            contents=prompt,
            config=types.GenerateContentConfig(
                response_mime_type="application/json",
                response_schema=MeetingProposalSchema,
            ),
        )
        return self.parse_response(response.text)

    def parse_response(self, text: Optional[str]) -> PlanningCandidate:
        """モデルの JSON 応答を候補に変換"""
        if not text or not text.strip():
            raise PlanningFailure("Gemini から空の応答を受信しました")

        try:
            proposal = MeetingProposalSchema.model_validate_json(text.strip())
            candidate = PlanningCandidate(
                room_id=proposal.roomId,
                start_time=proposal.startTime,
                end_time=proposal.endTime,
                reasoning=proposal.reasoning,
            )
        except ValidationError as e:
            logger.error(f"Gemini 応答の解析に失敗: {e}")
            raise PlanningFailure(f"Gemini 応答が不正です: {e}") from e

        return candidate
