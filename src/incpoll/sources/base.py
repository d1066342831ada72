from __future__ import annotations

from typing import Any, Mapping, Protocol, Sequence

from ..models import Emission, OrderingKey, Page, PageParams


class PagedSource(Protocol):
    """
    子资源级别的翻页能力：一个表单、一个 subreddit、一个用户。

    约定：返回的 Page.items 从新到旧排列；next_token 为 None 表示没有更旧的页。
    """

    def name(self) -> str: ...

    def fetch_page(self, params: PageParams) -> Page: ...


class Connector(Protocol):
    """
    平台适配器接口：一个配置好的轮询源，包含一个或多个子资源，
    以及平台私有的排序键提取与归一化逻辑。
    """

    def key(self) -> str: ...

    def sub_resources(self) -> Sequence[PagedSource]: ...

    def ordering_key_of(self, item: Mapping[str, Any]) -> OrderingKey: ...

    def normalize(self, item: Mapping[str, Any], sub_resource: str) -> Emission: ...
