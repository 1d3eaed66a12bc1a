from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class SettledTask(Generic[T, R]):
    """1タスクの成功値または例外を保持します。"""

    item: T
    value: Optional[R] = None
    error: Optional[Exception] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class BoundedTaskPool:
    """同時実行数を上限で抑えてタスクを実行するワーカープールです。

    1件の失敗で他のタスクを止めず、全件の結果を入力順で返します。
    """

    def __init__(self, max_workers: int, name: str = "task") -> None:
        if max_workers <= 0:
            raise ValueError("max_workers は 1 以上を指定してください。")

        self._max_workers = max_workers
        self._name = name

    @property
    def max_workers(self) -> int:
        return self._max_workers

    def run_all(
        self,
        items: Sequence[T],
        func: Callable[[T], R],
        on_settled: Optional[Callable[[SettledTask[T, R], int, int], None]] = None,
    ) -> List[SettledTask[T, R]]:
        """全アイテムを実行し、完了を待って結果を返します。"""

        if len(items) == 0:
            return []

        results: List[Optional[SettledTask[T, R]]] = [None] * len(items)
        settled_count = 0

        with ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix=self._name) as executor:
            futures = {executor.submit(func, item): index for index, item in enumerate(items)}

            for future in as_completed(futures):
                index = futures[future]
                try:
                    settled = SettledTask(item=items[index], value=future.result())
                except Exception as ex:
                    settled = SettledTask(item=items[index], error=ex)

                results[index] = settled
                settled_count += 1

                if on_settled is not None:
                    on_settled(settled, settled_count, len(items))

        return [result for result in results if result is not None]
