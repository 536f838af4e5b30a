"""123云盘开放平台离线下载客户端."""

import logging
from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from magnetsync.config import Settings
from magnetsync.core.credentials import CredentialError, CredentialProvider

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class Pan123Error(Exception):
    """123云盘接口调用失败."""


class Pan123HTTPError(Pan123Error):
    """HTTP 层错误（网络异常或非 2xx 响应）."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class Pan123APIError(Pan123Error):
    """接口返回非 0 业务码."""

    def __init__(self, action: str, code: int, message: str) -> None:
        super().__init__(f"{action}失败: {message or code}")
        self.code = code


class Pan123ParseError(Pan123Error):
    """响应结构不符合预期."""


class Pan123ResolveError(Pan123Error):
    """磁链解析失败（无效或无人做种的磁链）."""


# ==================== 响应模型 ====================


class _Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class Envelope(_Payload):
    """123云盘统一响应外壳."""

    code: int
    message: str = ""
    data: Any = None


class ResolveFile(_Payload):
    id: int


class ResolveResource(_Payload):
    id: int
    result: int
    err_msg: str | None = None
    files: list[ResolveFile] = Field(default_factory=list)


class ResolveData(_Payload):
    resources: list[ResolveResource] = Field(default_factory=list, alias="list")


class SubmitTask(_Payload):
    task_id: int | str


class SubmitData(_Payload):
    task_list: list[SubmitTask] | None = None


class ProcessData(_Payload):
    status: int
    progress: float = 0
    file_id: int | str | None = Field(default=None, alias="fileID")
    fail_reason: str | None = Field(default=None, alias="failReason")


class MkdirData(_Payload):
    dir_id: int | str = Field(alias="dirID")


# ==================== 任务进度 ====================


class RemoteTaskStatus(IntEnum):
    """离线下载进度接口返回的状态码."""

    IN_PROGRESS = 0
    FAILED = 1
    SUCCEEDED = 2
    RETRYING = 3


class TaskState(Enum):
    """映射后的任务状态."""

    IN_PROGRESS = "in_progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class TaskProgress:
    """离线下载任务进度."""

    state: TaskState
    progress: float = 0
    file_id: str | None = None
    fail_reason: str | None = None


def map_task_status(data: ProcessData) -> TaskProgress:
    """把远程状态码映射为三态."""
    try:
        status = RemoteTaskStatus(data.status)
    except ValueError as e:
        msg = f"未知的离线下载状态码: {data.status}"
        raise Pan123ParseError(msg) from e

    match status:
        case RemoteTaskStatus.IN_PROGRESS | RemoteTaskStatus.RETRYING:
            return TaskProgress(state=TaskState.IN_PROGRESS, progress=data.progress)
        case RemoteTaskStatus.SUCCEEDED:
            if data.file_id is None or str(data.file_id) == "":
                msg = "离线下载已完成但响应缺少 fileID"
                raise Pan123ParseError(msg)
            return TaskProgress(
                state=TaskState.SUCCEEDED,
                progress=100,
                file_id=str(data.file_id),
            )
        case RemoteTaskStatus.FAILED:
            return TaskProgress(
                state=TaskState.FAILED,
                progress=data.progress,
                fail_reason=data.fail_reason or None,
            )


# ==================== 客户端 ====================


class Pan123Client:
    """123云盘离线下载接口封装，不读写本地状态."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        credentials: CredentialProvider,
        settings: Settings,
    ) -> None:
        self._client = client
        self.credentials = credentials
        self._open_api = settings.pan123_open_api_url.rstrip("/")
        self._task_api = settings.pan123_task_api_url.rstrip("/")

    async def resolve_and_submit(self, magnet_link: str, target_folder_id: str) -> str:
        """
        创建离线下载任务（两步流程）.

        1. 解析磁链，得到资源ID和文件列表
        2. 提交资源和全部文件，得到任务ID

        Args:
            magnet_link: 磁力链接
            target_folder_id: 保存到的云盘文件夹ID

        Returns:
            str: 离线下载任务ID
        """
        upload_dir = _folder_id(target_folder_id)

        resolve_data = await self._call(
            "POST",
            f"{self._task_api}/api/v2/offline_download/task/resolve",
            action="解析磁链",
            model=ResolveData,
            json={"urls": magnet_link},
        )
        if not resolve_data.resources:
            msg = "磁链解析结果为空"
            raise Pan123ResolveError(msg)

        resource = resolve_data.resources[0]
        if resource.result != 0:
            msg = f"磁链解析失败: {resource.err_msg or '未知错误'}"
            raise Pan123ResolveError(msg)
        if not resource.files:
            msg = "磁链解析结果不包含任何文件"
            raise Pan123ResolveError(msg)

        submit_data = await self._call(
            "POST",
            f"{self._task_api}/api/v2/offline_download/task/submit",
            action="提交下载任务",
            model=SubmitData,
            json={
                "resource_list": [
                    {
                        "resource_id": resource.id,
                        "select_file_id": [f.id for f in resource.files],
                    }
                ],
                "upload_dir": upload_dir,
            },
        )
        if not submit_data.task_list:
            msg = "提交下载任务失败: 未能获取任务ID"
            raise Pan123ParseError(msg)

        return str(submit_data.task_list[0].task_id)

    async def poll_status(self, task_id: str) -> TaskProgress:
        """查询离线下载进度."""
        data = await self._call(
            "GET",
            f"{self._open_api}/api/v1/offline/download/process",
            action="获取离线下载进度",
            model=ProcessData,
            params={"taskID": task_id},
        )
        return map_task_status(data)

    async def create_folder(self, name: str, parent_id: str) -> str:
        """在父文件夹下创建目录，返回新目录ID."""
        data = await self._call(
            "POST",
            f"{self._open_api}/upload/v1/file/mkdir",
            action="创建文件夹",
            model=MkdirData,
            json={"name": name, "parentID": _folder_id(parent_id)},
        )
        return str(data.dir_id)

    async def _call(
        self,
        method: str,
        url: str,
        *,
        action: str,
        model: type[ModelT],
        json: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
    ) -> ModelT:
        """发送请求并把 data 字段校验为对应的响应模型."""
        try:
            token = await self.credentials.get_valid_credential()
        except CredentialError as e:
            msg = f"{action}失败: 无法获取access_token ({e})"
            raise Pan123Error(msg) from e

        headers = {
            "Platform": "open_platform",
            "Authorization": f"Bearer {token}",
        }

        try:
            response = await self._client.request(
                method, url, json=json, params=params, headers=headers
            )
        except httpx.HTTPError as e:
            msg = f"{action}失败: {type(e).__name__} {e}"
            raise Pan123HTTPError(msg) from e

        if response.status_code == 401:
            self.credentials.invalidate()
        if response.is_error:
            msg = f"{action}失败: HTTP {response.status_code}"
            raise Pan123HTTPError(msg, status_code=response.status_code)

        try:
            envelope = Envelope.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            msg = f"{action}失败: 响应不是有效的JSON"
            raise Pan123ParseError(msg) from e

        if envelope.code != 0:
            if envelope.code == 401:
                self.credentials.invalidate()
            raise Pan123APIError(action, envelope.code, envelope.message)

        try:
            return model.model_validate(envelope.data)
        except ValidationError as e:
            logger.debug(f"{action} 响应结构异常: {envelope.data!r}")
            msg = f"{action}失败: 响应结构异常"
            raise Pan123ParseError(msg) from e


def _folder_id(value: str) -> int:
    try:
        return int(value)
    except (TypeError, ValueError) as e:
        msg = f"无效的云盘文件夹ID: {value!r}"
        raise Pan123Error(msg) from e
