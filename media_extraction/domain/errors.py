class ExtractionError(Exception):
    """抽出ジョブで発生するエラーの基底クラスです。"""

    error_kind = "internal"
    retryable = False


class InvalidRequestError(ExtractionError):
    """入力が不正なエラーです。再試行しません。"""

    error_kind = "invalid_request"


class SourceUnavailableError(ExtractionError):
    """取得元が応答しない、または成功以外のステータスを返したエラーです。"""

    error_kind = "source_unavailable"
    retryable = True


class TransferError(ExtractionError):
    """ダウンロード中にストリームが途切れたエラーです。"""

    error_kind = "transfer"
    retryable = True


class InsufficientMetadataError(ExtractionError):
    """probe結果に必要な寸法や長さが含まれないエラーです。"""

    error_kind = "insufficient_metadata"


class CutUnsupportedError(ExtractionError):
    """ストリームコピーでの切り出しができないエラーです。"""

    error_kind = "cut_unsupported"


class ToolExecutionError(ExtractionError):
    """変換ツールの実行自体が失敗したエラーです。"""

    error_kind = "tool_execution"

    def __init__(self, message: str, transient: bool = False) -> None:
        super().__init__(message)
        self.retryable = transient


class OperationTimeoutError(ExtractionError):
    """ダウンロードやサブプロセスが制限時間を超えたエラーです。"""

    error_kind = "timeout"
    retryable = True


class StorageError(ExtractionError):
    """成果物のアップロードに失敗したエラーです。"""

    error_kind = "storage"
    retryable = True


class ResourceError(ExtractionError):
    """作業領域を確保できないエラーです。"""

    error_kind = "resource"


class JobCancelledError(ExtractionError):
    """呼び出し側がジョブをキャンセルしたことを表します。"""

    error_kind = "cancelled"


def error_kind_of(error: BaseException) -> str:
    """例外から error_kind を取り出します。"""

    if isinstance(error, ExtractionError):
        return error.error_kind

    return "internal"
