"""
Firestore 用户记录服务

交互式模板购买后，在 Firestore 中为用户创建一份记录，用户之后在编辑器中填写的数据都存放在这里。
通过 Firestore REST API v1 访问：
https://firebase.google.com/docs/firestore/reference/rest

错误分类：
- TransientStoreError: 网络错误、超时、408/429/5xx，可以重试
- PermanentStoreError: 其他 4xx（权限、参数错误等），重试无意义
"""
import logging
from datetime import datetime
from typing import Any, Protocol

import httpx

from marketplace.core.config import settings
from marketplace.models import utc_now

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = {408, 429}


class StoreError(Exception):
    """文档存储调用失败"""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientStoreError(StoreError):
    """可重试的存储错误"""


class PermanentStoreError(StoreError):
    """不可重试的存储错误"""


class DocumentStore(Protocol):
    """OutboxDispatcher 依赖的外部文档存储"""

    def create_user_record(
        self, user_id: str, template_id: str, template_structure: dict[str, Any]
    ) -> str: ...

    def delete_user_record(self, record_id: str) -> None: ...


def to_firestore_value(value: Any) -> dict[str, Any]:
    """
    把 Python 值编码为 Firestore REST 的 Value 结构

    bool 需要在 int 之前判断（bool 是 int 的子类）。
    """
    if value is None:
        return {"nullValue": None}
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        return {"timestampValue": value.isoformat().replace("+00:00", "Z")}
    if isinstance(value, dict):
        return {"mapValue": {"fields": to_firestore_fields(value)}}
    if isinstance(value, list | tuple):
        return {"arrayValue": {"values": [to_firestore_value(v) for v in value]}}
    return {"stringValue": str(value)}


def to_firestore_fields(data: dict[str, Any]) -> dict[str, Any]:
    return {str(key): to_firestore_value(value) for key, value in data.items()}


def from_firestore_value(value: dict[str, Any]) -> Any:
    """Firestore REST Value 结构解码为 Python 值"""
    if "nullValue" in value:
        return None
    if "booleanValue" in value:
        return value["booleanValue"]
    if "integerValue" in value:
        return int(value["integerValue"])
    if "doubleValue" in value:
        return float(value["doubleValue"])
    if "timestampValue" in value:
        return datetime.fromisoformat(value["timestampValue"].replace("Z", "+00:00"))
    if "mapValue" in value:
        return from_firestore_fields(value["mapValue"].get("fields", {}))
    if "arrayValue" in value:
        return [from_firestore_value(v) for v in value["arrayValue"].get("values", [])]
    return value.get("stringValue")


def from_firestore_fields(fields: dict[str, Any]) -> dict[str, Any]:
    return {key: from_firestore_value(value) for key, value in fields.items()}


class FirestoreService:
    """Firestore REST API 封装"""

    def __init__(
        self,
        *,
        project_id: str,
        base_url: str,
        database: str = "(default)",
        collection: str = "user_records",
        access_token: str | None = None,
        timeout: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        """
        初始化 Firestore 服务

        Args:
            project_id: GCP 项目 ID
            base_url: REST API 基础地址（官方地址或模拟器地址）
            database: 数据库 ID
            collection: 用户记录集合名
            access_token: OAuth2 access token，模拟器可不传
            timeout: 请求超时（秒）
            transport: 自定义 httpx transport（测试时注入 MockTransport）
        """
        self.collection = collection
        self.documents_path = f"projects/{project_id}/databases/{database}/documents"
        headers = {"Content-Type": "application/json"}
        if access_token:
            headers["Authorization"] = f"Bearer {access_token}"
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        logger.info("Firestore service initialized: %s/%s", self.documents_path, collection)

    def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        """发送请求并把失败映射到 TransientStoreError / PermanentStoreError"""
        try:
            response = self.client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise TransientStoreError(f"Firestore request failed: {e}") from e
        if response.is_success:
            return response
        message = f"Firestore {method} {path} returned {response.status_code}: {response.text}"
        if response.status_code in _RETRYABLE_STATUS or response.status_code >= 500:
            raise TransientStoreError(message, status_code=response.status_code)
        raise PermanentStoreError(message, status_code=response.status_code)

    def _document_path(self, record_id: str) -> str:
        return f"/{self.documents_path}/{self.collection}/{record_id}"

    def create_user_record(
        self, user_id: str, template_id: str, template_structure: dict[str, Any]
    ) -> str:
        """
        创建用户记录

        Args:
            user_id: 用户 ID
            template_id: 模板商品 ID
            template_structure: 模板字段结构

        Returns:
            新建文档 ID
        """
        now = utc_now()
        document = {
            "user_id": user_id,
            "product_id": template_id,
            "template_structure": template_structure,
            "user_data": {},  # 用户数据初始为空
            "status": "active",
            "created_at": now,
            "updated_at": now,
        }
        try:
            response = self._request(
                "POST",
                f"/{self.documents_path}/{self.collection}",
                json={"fields": to_firestore_fields(document)},
            )
        except StoreError as e:
            logger.error(
                "Firestore: Failed to create user record user_id=%s product_id=%s error=%s",
                user_id,
                template_id,
                e,
            )
            raise
        record_id = response.json()["name"].rsplit("/", 1)[-1]
        logger.info(
            "Firestore: Created user record document_id=%s user_id=%s product_id=%s",
            record_id,
            user_id,
            template_id,
        )
        return record_id

    def get_user_record(self, record_id: str) -> dict[str, Any] | None:
        """读取用户记录，不存在返回 None"""
        try:
            response = self._request("GET", self._document_path(record_id))
        except PermanentStoreError as e:
            if e.status_code == 404:
                return None
            raise
        data = from_firestore_fields(response.json().get("fields", {}))
        return {"id": record_id, **data}

    def update_user_data(self, record_id: str, user_data: dict[str, Any]) -> None:
        """只更新 user_data 和 updated_at 两个字段"""
        self._request(
            "PATCH",
            self._document_path(record_id),
            params=[("updateMask.fieldPaths", "user_data"), ("updateMask.fieldPaths", "updated_at")],
            json={"fields": to_firestore_fields({"user_data": user_data, "updated_at": utc_now()})},
        )
        logger.info("Firestore: Updated user record record_id=%s", record_id)

    def delete_user_record(self, record_id: str) -> None:
        """删除用户记录；记录已不存在时视为成功"""
        try:
            self._request("DELETE", self._document_path(record_id))
        except PermanentStoreError as e:
            if e.status_code != 404:
                logger.error(
                    "Firestore: Failed to delete user record record_id=%s error=%s", record_id, e
                )
                raise
            logger.info("Firestore: User record already deleted record_id=%s", record_id)
            return
        logger.info("Firestore: Deleted user record record_id=%s", record_id)

    def close(self) -> None:
        self.client.close()


# 全局 Firestore 服务实例
_firestore_service: FirestoreService | None = None


def get_firestore_service() -> FirestoreService:
    """
    获取全局 Firestore 服务实例

    第一次调用时根据配置创建，worker 进程内复用同一个 httpx 连接池。
    """
    global _firestore_service
    if _firestore_service is None:
        _firestore_service = FirestoreService(
            project_id=settings.FIRESTORE_PROJECT_ID,
            base_url=settings.firestore_base_url,
            database=settings.FIRESTORE_DATABASE,
            collection=settings.FIRESTORE_COLLECTION,
            access_token=settings.FIRESTORE_ACCESS_TOKEN,
            timeout=settings.FIRESTORE_TIMEOUT_SECONDS,
        )
    return _firestore_service
