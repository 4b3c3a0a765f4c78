"""
スナップショット Repository

セッションレジストリと予約ストアのスナップショットを不透明なブロブとして
保存・復元します。ファイルと Firestore の2種類の保存先、および
Fernet による保存時暗号化をサポートします。
"""

import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Optional

from cryptography.fernet import Fernet, InvalidToken
from google.cloud import firestore

# ログ設定
logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """リポジトリエラー基底クラス"""
    pass


class EncryptionError(RepositoryError):
    """暗号化エラー"""
    pass


class EncryptionManager:
    """暗号化・復号化管理"""

    def __init__(self, encryption_key: Optional[str] = None):
        """
        暗号化マネージャーを初期化

        Args:
            encryption_key: Fernetキー（未指定時は環境変数 ENCRYPTION_KEY）
        """
        if encryption_key is None:
            encryption_key = os.getenv('ENCRYPTION_KEY')

        if not encryption_key:
            # 開発環境用の一時キー（再起動後は復号できない）
            logger.warning("暗号化キーが設定されていません。一時キーを生成します。")
            encryption_key = Fernet.generate_key().decode()

        try:
            self.fernet = Fernet(encryption_key.encode() if isinstance(encryption_key, str) else encryption_key)
        except (ValueError, TypeError) as e:
            raise EncryptionError(f"暗号化キーの初期化に失敗しました: {e}")

    def encrypt(self, data: str) -> str:
        """文字列を暗号化"""
        return self.fernet.encrypt(data.encode('utf-8')).decode('utf-8')

    def decrypt(self, encrypted_data: str) -> str:
        """暗号化された文字列を復号化"""
        try:
            return self.fernet.decrypt(encrypted_data.encode('utf-8')).decode('utf-8')
        except InvalidToken as e:
            raise EncryptionError(f"復号化に失敗しました: {e!r}")

    def seal(self, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        """スナップショット全体を暗号化して封筒形式にする"""
        payload = json.dumps(snapshot, ensure_ascii=False)
        return {"encrypted": True, "payload": self.encrypt(payload)}

    def unseal(self, envelope: Dict[str, Any]) -> Dict[str, Any]:
        """封筒形式からスナップショットを取り出す"""
        return json.loads(self.decrypt(envelope["payload"]))


class SnapshotRepository(ABC):
    """スナップショット保存先の基底クラス"""

    def __init__(self, encryption_manager: Optional[EncryptionManager] = None):
        self.encryption_manager = encryption_manager

    def _prepare_data_for_storage(self, snapshot: Dict[str, Any]) -> Dict[str, Any]:
        """ストレージ用にデータを準備"""
        if self.encryption_manager:
            return self.encryption_manager.seal(snapshot)
        return snapshot

    def _prepare_data_from_storage(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """ストレージからデータを復元"""
        if data.get("encrypted"):
            if not self.encryption_manager:
                raise EncryptionError("暗号化されたスナップショットですが暗号化キーがありません")
            return self.encryption_manager.unseal(data)
        return data

    async def save(self, snapshot: Dict[str, Any]) -> None:
        """スナップショットを保存"""
        await self._write(self._prepare_data_for_storage(snapshot))

    async def load(self) -> Optional[Dict[str, Any]]:
        """スナップショットを読み込み（未保存なら None）"""
        data = await self._read()
        if data is None:
            return None
        return self._prepare_data_from_storage(data)

    @abstractmethod
    async def _write(self, data: Dict[str, Any]) -> None:
        """保存先への書き込み（継承クラスで実装）"""
        pass

    @abstractmethod
    async def _read(self) -> Optional[Dict[str, Any]]:
        """保存先からの読み込み（継承クラスで実装）"""
        pass


class FileSnapshotRepository(SnapshotRepository):
    """JSONファイルへのスナップショット保存"""

    def __init__(self, path: str, encryption_manager: Optional[EncryptionManager] = None):
        super().__init__(encryption_manager)
        self.path = Path(path)

    async def _write(self, data: Dict[str, Any]) -> None:
        tmp_path: Optional[str] = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            # 途中で失敗しても既存ファイルを壊さないよう一時ファイル経由で置き換える
            fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), suffix=".tmp")
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_path, self.path)
            tmp_path = None
            logger.info(f"スナップショットを保存: {self.path}")
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"スナップショット保存エラー: {self.path} - {e}")
            raise RepositoryError(f"保存に失敗しました: {e}")
        finally:
            if tmp_path is not None and os.path.exists(tmp_path):
                os.unlink(tmp_path)

    async def _read(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"スナップショット読み込みエラー: {self.path} - {e}")
            raise RepositoryError(f"読み込みに失敗しました: {e}")


class FirestoreSnapshotRepository(SnapshotRepository):
    """Firestore の単一ドキュメントへのスナップショット保存"""

    def __init__(
        self,
        collection_name: str = "meetsync_snapshots",
        document_id: str = "registry",
        firestore_client: Optional[firestore.AsyncClient] = None,
        project_id: Optional[str] = None,
        encryption_manager: Optional[EncryptionManager] = None
    ):
        """
        リポジトリを初期化

        Args:
            collection_name: Firestoreコレクション名
            document_id: スナップショットを格納するドキュメントID
            firestore_client: Firestore非同期クライアント
            project_id: GCPプロジェクトID（クライアント未指定時）
            encryption_manager: 暗号化マネージャー
        """
        super().__init__(encryption_manager)
        self.collection_name = collection_name
        self.document_id = document_id
        self.db = firestore_client or firestore.AsyncClient(project=project_id)
        self.collection = self.db.collection(collection_name)

    async def _write(self, data: Dict[str, Any]) -> None:
        try:
            await self.collection.document(self.document_id).set(data)
            logger.info(f"{self.collection_name}/{self.document_id} にスナップショットを保存")
        except Exception as e:
            logger.error(f"{self.collection_name}スナップショット保存エラー: {e}")
            raise RepositoryError(f"保存に失敗しました: {e}")

    async def _read(self) -> Optional[Dict[str, Any]]:
        try:
            doc = await self.collection.document(self.document_id).get()
        except Exception as e:
            logger.error(f"{self.collection_name}スナップショット取得エラー: {e}")
            raise RepositoryError(f"取得に失敗しました: {e}")

        if not doc.exists:
            return None
        return doc.to_dict()
