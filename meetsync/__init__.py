"""
MeetSync - グループ会議調整エンジン

参加者のセッション参加から会議室予約までを自動化するコアシステム:
- 参加者の準備完了ハンドシェイク
- プランナーによる時間・会議室の提案
- 参加者投票と全員一致の確認
- 競合のない会議室予約（競合時は除外して再計画）
"""

__version__ = "0.1.0"
