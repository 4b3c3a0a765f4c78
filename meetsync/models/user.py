"""
User / Location モデル

ユーザーは外部の認証コラボレーターから供給され、作成後は変更されません。
"""

import math
import re
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Location(BaseModel):
    """緯度経度"""
    model_config = ConfigDict(frozen=True)

    lat: float = Field(..., description="緯度")
    lng: float = Field(..., description="経度")

    @field_validator('lat')
    @classmethod
    def validate_lat(cls, v: float) -> float:
        if v < -90 or v > 90:
            raise ValueError('緯度は-90から90の範囲である必要があります')
        return v

    @field_validator('lng')
    @classmethod
    def validate_lng(cls, v: float) -> float:
        if v < -180 or v > 180:
            raise ValueError('経度は-180から180の範囲である必要があります')
        return v

    def distance_km(self, other: "Location") -> float:
        """ハバーサイン距離（km）"""
        radius = 6371.0
        phi1, phi2 = math.radians(self.lat), math.radians(other.lat)
        d_phi = math.radians(other.lat - self.lat)
        d_lambda = math.radians(other.lng - self.lng)
        a = (
            math.sin(d_phi / 2) ** 2 +
            math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
        )
        return 2 * radius * math.asin(math.sqrt(a))


class User(BaseModel):
    """ユーザー（idは不透明で安定したキー）"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1, description="ユーザーID")
    name: str = Field(..., description="表示名")
    email: str = Field(..., description="メールアドレス")
    time_zone: Optional[str] = Field(None, description="タイムゾーン（表示用のみ）")

    @field_validator('email')
    @classmethod
    def validate_email(cls, v: str) -> str:
        """メールアドレスの形式検証"""
        email_pattern = r'^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$'
        if not re.match(email_pattern, v):
            raise ValueError('有効なメールアドレス形式である必要があります')
        return v
