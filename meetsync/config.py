"""
調整エンジン設定

デフォルト値、MEETSYNC_* 環境変数、または YAML ファイルから読み込みます。
"""

import logging
import os
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

logger = logging.getLogger(__name__)

ENV_PREFIX = "MEETSYNC_"


class DeclinePolicy(str, Enum):
    """辞退時の再計画方式"""
    REPLAN = "replan"                    # ハンドシェイクなしで即座に再計画
    RESET_READINESS = "reset_readiness"  # 全員の準備状態を戻して PENDING へ


class CoordinatorSettings(BaseModel):
    """調整エンジン設定"""

    # 会議・計画
    meeting_duration_minutes: int = Field(default=60, ge=5, le=24 * 60, description="会議時間（分）")
    planner_timeout_seconds: float = Field(default=30.0, gt=0, description="プランナー呼び出しのタイムアウト（秒）")
    planning_stale_after_seconds: float = Field(default=120.0, gt=0, description="計画が停滞とみなされるまでの秒数")
    max_planning_rounds: int = Field(default=10, ge=1, description="セッションあたりの最大計画ラウンド数")
    decline_policy: DeclinePolicy = Field(default=DeclinePolicy.REPLAN, description="辞退時の再計画方式")

    # ローカルプランナーの探索範囲
    day_start_hour: int = Field(default=9, description="探索開始時刻（時）")
    day_end_hour: int = Field(default=20, description="探索終了時刻（時）")
    slot_step_minutes: int = Field(default=30, ge=5, description="候補スロットの刻み（分）")
    search_days: int = Field(default=2, ge=1, le=14, description="探索日数")

    # 外部サービス
    gemini_model: str = Field(default="gemini-2.5-pro", description="Geminiモデル名")
    snapshot_path: Optional[str] = Field(None, description="スナップショットファイルパス")
    firestore_project_id: Optional[str] = Field(None, description="Firestore GCPプロジェクトID")
    firestore_collection: str = Field(default="meetsync_snapshots", description="Firestoreコレクション名")

    @field_validator('day_start_hour', 'day_end_hour')
    @classmethod
    def validate_hour(cls, v: int) -> int:
        """時刻の検証"""
        if v < 0 or v > 24:
            raise ValueError('時刻は0-24の範囲である必要があります')
        return v

    @model_validator(mode='after')
    def validate_day_window(self) -> "CoordinatorSettings":
        if self.day_end_hour <= self.day_start_hour:
            raise ValueError('探索終了時刻は開始時刻より後である必要があります')
        return self

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> "CoordinatorSettings":
        """MEETSYNC_* 環境変数から設定を作成"""
        environ = os.environ if environ is None else environ
        values: Dict[str, Any] = {}
        for field_name in cls.model_fields:
            env_name = f"{ENV_PREFIX}{field_name.upper()}"
            if env_name in environ:
                values[field_name] = environ[env_name]
        return cls(**values)

    @classmethod
    def from_yaml(cls, path: str) -> "CoordinatorSettings":
        """YAMLファイルから設定を作成（トップレベルまたは meetsync セクション）"""
        with open(Path(path), 'r', encoding='utf-8') as f:
            data = yaml.safe_load(f) or {}

        if not isinstance(data, dict):
            raise ValueError(f'設定ファイルの形式が不正です: {path}')

        section = data.get("meetsync", data)
        logger.info(f"設定ファイル読み込み: {path}")
        return cls(**section)
