"""
Common — ドメイン例外

各サービスのコマンドはこれらの例外を送出し、
FastAPI 層 (main.py) が HTTPException に変換する。
"""


class NotFound(Exception):
    """参照されたリソースが存在しない (404)"""

    def __init__(self, resource: str, resource_id) -> None:
        super().__init__(f"{resource} #{resource_id} not found")
        self.resource = resource
        self.resource_id = resource_id


class InvalidOperation(Exception):
    """ドメインルール違反 (400)。リトライしても結果は変わらない。"""

    def __init__(self, reason: str) -> None:
        super().__init__(reason)
        self.reason = reason


class NotOwner(InvalidOperation):
    """所有者以外による変更・削除 (403)"""
