"""WordPress REST API tools for the assistant.

Every wp_* tool is one row in WP_OPERATIONS describing the HTTP method,
the /wp/v2 endpoint, which input key (if any) goes in the path and how
the remaining input is sent.  WordPressToolExecutor turns a row plus the
model's input into a WordPressClient.request() call.

Uses a separate httpx client (NOT AgentRunner's -- that has API credentials).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal
from urllib.parse import quote

import httpx

from atelier.api.tools import ToolDefinition, ToolErr, ToolOk, ToolResult
from atelier.config import Settings
from atelier.errors import ConfigurationError

logger = logging.getLogger(__name__)

NOT_CONFIGURED = "WordPress API is not configured. Set WORDPRESS_API_URL in your environment."


def _auth_required(action: str) -> str:
    return (
        f"WordPress authentication is required for {action}. "
        "Set WORDPRESS_USERNAME and WORDPRESS_APP_PASSWORD."
    )


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


@dataclass
class WordPressResponse:
    status: int
    data: Any
    headers: httpx.Headers


class WordPressClient:
    """Minimal WordPress REST client over a shared httpx.AsyncClient."""

    def __init__(self, settings: Settings, http: httpx.AsyncClient) -> None:
        self._base_url = settings.wordpress_api_url.rstrip("/")
        self._username = settings.wordpress_username
        self._password = settings.wordpress_app_password
        self._http = http

    @property
    def configured(self) -> bool:
        return bool(self._base_url)

    @property
    def has_credentials(self) -> bool:
        return bool(self._username and self._password)

    async def request(
        self,
        method: str,
        endpoint: str,
        *,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        auth: bool = False,
    ) -> WordPressResponse:
        """Send a request to ``{WORDPRESS_API_URL}{endpoint}``.

        Basic auth is attached whenever credentials are configured;
        ``auth=True`` makes them mandatory.  Raises ConfigurationError,
        httpx.HTTPStatusError or httpx.RequestError.
        """
        if not self.configured:
            raise ConfigurationError(NOT_CONFIGURED)
        if auth and not self.has_credentials:
            raise ConfigurationError(_auth_required("this request"))

        kwargs: dict[str, Any] = {"headers": {"Content-Type": "application/json"}}
        if params:
            kwargs["params"] = _encode_params(params)
        if data is not None:
            kwargs["json"] = data
        if self.has_credentials:
            kwargs["auth"] = httpx.BasicAuth(self._username, self._password)

        response = await self._http.request(method, f"{self._base_url}{endpoint}", **kwargs)
        response.raise_for_status()
        return WordPressResponse(
            status=response.status_code,
            data=_response_body(response),
            headers=response.headers,
        )


def _encode_params(params: dict[str, Any]) -> dict[str, Any]:
    # WordPress accepts comma-separated lists for array query args
    encoded: dict[str, Any] = {}
    for key, value in params.items():
        if value is None:
            continue
        if isinstance(value, (list, tuple)):
            value = ",".join(str(v) for v in value)
        elif isinstance(value, bool):
            value = "true" if value else "false"
        encoded[key] = value
    return encoded


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


# ---------------------------------------------------------------------------
# Operation table
# ---------------------------------------------------------------------------

Shape = Literal["query", "none", "body", "delete"]


@dataclass(frozen=True)
class WordPressOperation:
    """How one wp_* tool maps onto the REST API.

    shape:
        query  -- whole input as query params
        none   -- nothing beyond the path key
        body   -- input minus the path key as JSON body
        delete -- only force/reassign as query params
    """

    method: str
    endpoint: str
    shape: Shape
    path_key: str | None = None
    auth_action: str | None = None  # set when credentials are mandatory
    message: str | None = None
    paged: bool = False


def _list(resource: str) -> WordPressOperation:
    return WordPressOperation("GET", f"/wp/v2/{resource}", "query", paged=True)


def _get(resource: str) -> WordPressOperation:
    return WordPressOperation("GET", f"/wp/v2/{resource}", "none", path_key="id")


def _create(resource: str, action: str = "creating content", message: str = "Created successfully") -> WordPressOperation:
    return WordPressOperation("POST", f"/wp/v2/{resource}", "body", auth_action=action, message=message)


def _update(resource: str) -> WordPressOperation:
    return WordPressOperation(
        "PUT", f"/wp/v2/{resource}", "body",
        path_key="id", auth_action="updating content", message="Updated successfully",
    )


def _delete(resource: str) -> WordPressOperation:
    return WordPressOperation(
        "DELETE", f"/wp/v2/{resource}", "delete",
        path_key="id", auth_action="deleting content", message="Deleted successfully",
    )


WP_OPERATIONS: dict[str, WordPressOperation] = {
    # Posts
    "wp_list_posts": _list("posts"),
    "wp_get_post": _get("posts"),
    "wp_create_post": _create("posts"),
    "wp_update_post": _update("posts"),
    "wp_delete_post": _delete("posts"),
    # Pages
    "wp_list_pages": _list("pages"),
    "wp_get_page": _get("pages"),
    "wp_create_page": _create("pages"),
    "wp_update_page": _update("pages"),
    "wp_delete_page": _delete("pages"),
    # Media
    "wp_list_media": _list("media"),
    "wp_get_media": _get("media"),
    "wp_update_media": _update("media"),
    "wp_delete_media": _delete("media"),
    # Categories
    "wp_list_categories": _list("categories"),
    "wp_get_category": _get("categories"),
    "wp_create_category": _create("categories"),
    "wp_update_category": _update("categories"),
    "wp_delete_category": _delete("categories"),
    # Tags
    "wp_list_tags": _list("tags"),
    "wp_get_tag": _get("tags"),
    "wp_create_tag": _create("tags"),
    "wp_update_tag": _update("tags"),
    "wp_delete_tag": _delete("tags"),
    # Comments
    "wp_list_comments": _list("comments"),
    "wp_get_comment": _get("comments"),
    "wp_create_comment": _create("comments"),
    "wp_update_comment": _update("comments"),
    "wp_delete_comment": _delete("comments"),
    # Users
    "wp_list_users": _list("users"),
    "wp_get_user": _get("users"),
    "wp_create_user": _create("users", "creating users", "User created successfully"),
    "wp_update_user": _update("users"),
    "wp_delete_user": _delete("users"),
    # Settings
    "wp_get_settings": WordPressOperation(
        "GET", "/wp/v2/settings", "none", auth_action="accessing settings",
    ),
    "wp_update_settings": WordPressOperation(
        "PUT", "/wp/v2/settings", "body",
        auth_action="updating settings", message="Settings updated successfully",
    ),
    # Search
    "wp_search": WordPressOperation("GET", "/wp/v2/search", "query", paged=True),
    # Taxonomies
    "wp_list_taxonomies": WordPressOperation("GET", "/wp/v2/taxonomies", "query"),
    "wp_get_taxonomy": WordPressOperation("GET", "/wp/v2/taxonomies", "none", path_key="taxonomy"),
    # Plugins
    "wp_list_plugins": WordPressOperation("GET", "/wp/v2/plugins", "query"),
    "wp_get_plugin": WordPressOperation("GET", "/wp/v2/plugins", "none", path_key="plugin"),
    "wp_create_plugin": WordPressOperation(
        "POST", "/wp/v2/plugins", "body", auth_action="managing plugins",
    ),
    "wp_update_plugin": WordPressOperation(
        "PUT", "/wp/v2/plugins", "body", path_key="plugin", auth_action="managing plugins",
    ),
    "wp_delete_plugin": WordPressOperation(
        "DELETE", "/wp/v2/plugins", "none", path_key="plugin", auth_action="managing plugins",
    ),
}


# ---------------------------------------------------------------------------
# Tool schemas
# ---------------------------------------------------------------------------

_POST_STATUSES = ["publish", "draft", "pending", "private", "future"]
_PAGE_STATUSES = ["publish", "draft", "pending", "private"]
_COMMENT_STATUSES = ["approved", "hold", "spam", "trash"]
_PLUGIN_STATUSES = ["active", "inactive"]


def _num(description: str) -> dict[str, Any]:
    return {"type": "number", "description": description}


def _str(description: str, enum: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "string", "description": description}
    if enum:
        schema["enum"] = enum
    return schema


def _bool(description: str) -> dict[str, Any]:
    return {"type": "boolean", "description": description}


def _array(description: str, item_type: str) -> dict[str, Any]:
    return {"type": "array", "description": description, "items": {"type": item_type}}


def _object(properties: dict[str, Any], required: list[str] | None = None) -> dict[str, Any]:
    schema: dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def _paging(noun: str) -> dict[str, Any]:
    return {
        "per_page": _num(f"Number of {noun} per page (default: 10, max: 100)"),
        "page": _num("Page number for pagination (default: 1)"),
    }


def _by_id(noun: str) -> dict[str, Any]:
    return _object({"id": _num(f"The {noun} ID")}, ["id"])


def _deletable(noun: str) -> dict[str, Any]:
    return _object(
        {
            "id": _num(f"The {noun} ID to delete"),
            "force": _bool("Whether to bypass trash and force deletion (default: false)"),
        },
        ["id"],
    )


def _post_fields(statuses: list[str], noun: str, status_desc: str) -> dict[str, Any]:
    return {
        "title": _str(f"The {noun} title"),
        "content": _str(f"The {noun} content (HTML allowed)"),
        "status": _str(status_desc, statuses),
    }


_POST_EXTRAS = {
    "excerpt": _str("The post excerpt"),
    "categories": _array("Array of category IDs", "number"),
    "tags": _array("Array of tag IDs", "number"),
    "featured_media": _num("Featured media ID"),
}

_USER_FIELDS = {
    "username": _str("Login name for the user"),
    "email": _str("Email address for the user"),
    "name": _str("Display name for the user"),
    "first_name": _str("First name for the user"),
    "last_name": _str("Last name for the user"),
    "roles": _array("Roles assigned to the user", "string"),
}

_TERM_FIELDS = {
    "category": {
        "name": _str("The category name"),
        "description": _str("The category description"),
        "parent": _num("Parent category ID"),
    },
    "tag": {
        "name": _str("The tag name"),
        "description": _str("The tag description"),
    },
}

_PLUGIN_SLUG = _str('The plugin slug (e.g., "akismet/akismet")')


def _build_wordpress_tools() -> list[ToolDefinition]:
    defs: list[tuple[str, str, dict[str, Any]]] = [
        # Posts
        (
            "wp_list_posts",
            "List WordPress posts with optional filtering. Returns an array of posts.",
            _object({
                **_paging("posts"),
                "status": _str("Filter by post status", _POST_STATUSES),
                "search": _str("Search posts by keyword"),
                "author": _num("Filter by author ID"),
            }),
        ),
        ("wp_get_post", "Get a specific WordPress post by ID.", _by_id("post")),
        (
            "wp_create_post",
            "Create a new WordPress post.",
            _object(
                {**_post_fields(_POST_STATUSES, "post", "Post status (default: draft)"), **_POST_EXTRAS},
                ["title", "content"],
            ),
        ),
        (
            "wp_update_post",
            "Update an existing WordPress post.",
            _object(
                {
                    "id": _num("The post ID to update"),
                    **_post_fields(_POST_STATUSES, "post", "Post status"),
                    **_POST_EXTRAS,
                },
                ["id"],
            ),
        ),
        ("wp_delete_post", "Delete a WordPress post by ID.", _deletable("post")),
        # Pages
        (
            "wp_list_pages",
            "List WordPress pages with optional filtering.",
            _object({
                **_paging("pages"),
                "status": _str("Filter by page status", _PAGE_STATUSES),
                "search": _str("Search pages by keyword"),
            }),
        ),
        ("wp_get_page", "Get a specific WordPress page by ID.", _by_id("page")),
        (
            "wp_create_page",
            "Create a new WordPress page.",
            _object(
                {
                    **_post_fields(_PAGE_STATUSES, "page", "Page status (default: draft)"),
                    "parent": _num("Parent page ID"),
                },
                ["title", "content"],
            ),
        ),
        (
            "wp_update_page",
            "Update an existing WordPress page.",
            _object(
                {
                    "id": _num("The page ID to update"),
                    **_post_fields(_PAGE_STATUSES, "page", "Page status"),
                    "parent": _num("Parent page ID"),
                },
                ["id"],
            ),
        ),
        ("wp_delete_page", "Delete a WordPress page by ID.", _deletable("page")),
        # Media
        (
            "wp_list_media",
            "List WordPress media items.",
            _object({
                **_paging("items"),
                "media_type": _str("Filter by media type", ["image", "video", "audio", "application"]),
                "search": _str("Search media by keyword"),
            }),
        ),
        ("wp_get_media", "Get a specific WordPress media item by ID.", _by_id("media")),
        (
            "wp_update_media",
            "Update an existing WordPress media item.",
            _object(
                {
                    "id": _num("The media ID to update"),
                    "title": _str("The title for the media item"),
                    "alt_text": _str("Alternative text for the media item"),
                    "caption": _str("Caption for the media item"),
                    "description": _str("Description for the media item"),
                },
                ["id"],
            ),
        ),
        ("wp_delete_media", "Delete a WordPress media item by ID.", _deletable("media")),
    ]

    # Categories and tags share a shape
    for noun, plural in (("category", "categories"), ("tag", "tags")):
        fields = _TERM_FIELDS[noun]
        defs += [
            (
                f"wp_list_{plural}",
                f"List WordPress {plural}.",
                _object({
                    **_paging(plural),
                    "search": _str(f"Search {plural} by keyword"),
                    "hide_empty": _bool(f"Whether to hide {plural} with no posts (default: false)"),
                }),
            ),
            (f"wp_get_{noun}", f"Get a specific WordPress {noun} by ID.", _by_id(noun)),
            (f"wp_create_{noun}", f"Create a new WordPress {noun}.", _object(fields, ["name"])),
            (
                f"wp_update_{noun}",
                f"Update an existing WordPress {noun}.",
                _object({"id": _num(f"The {noun} ID to update"), **fields}, ["id"]),
            ),
            (f"wp_delete_{noun}", f"Delete a WordPress {noun} by ID.", _deletable(noun)),
        ]

    defs += [
        # Comments
        (
            "wp_list_comments",
            "List WordPress comments.",
            _object({
                **_paging("comments"),
                "post": _num("Filter by post ID"),
                "status": _str("Filter by comment status", _COMMENT_STATUSES),
            }),
        ),
        ("wp_get_comment", "Get a specific WordPress comment by ID.", _by_id("comment")),
        (
            "wp_create_comment",
            "Create a new WordPress comment.",
            _object(
                {
                    "post": _num("The post ID to comment on"),
                    "content": _str("The comment content"),
                    "author_name": _str("Comment author name"),
                    "author_email": _str("Comment author email"),
                },
                ["post", "content"],
            ),
        ),
        (
            "wp_update_comment",
            "Update an existing WordPress comment.",
            _object(
                {
                    "id": _num("The comment ID to update"),
                    "content": _str("The comment content"),
                    "status": _str("Comment status", _COMMENT_STATUSES),
                },
                ["id"],
            ),
        ),
        ("wp_delete_comment", "Delete a WordPress comment by ID.", _deletable("comment")),
        # Users
        (
            "wp_list_users",
            "List WordPress users.",
            _object({
                **_paging("users"),
                "search": _str("Search users by keyword"),
                "roles": _array("Filter by user roles", "string"),
            }),
        ),
        ("wp_get_user", "Get a specific WordPress user by ID.", _by_id("user")),
        (
            "wp_create_user",
            "Create a new WordPress user.",
            _object(
                {**_USER_FIELDS, "password": _str("Password for the user (never included in response)")},
                ["username", "email", "password"],
            ),
        ),
        (
            "wp_update_user",
            "Update an existing WordPress user.",
            _object(
                {"id": _num("The user ID to update"), **_USER_FIELDS, "password": _str("Password for the user")},
                ["id"],
            ),
        ),
        (
            "wp_delete_user",
            "Delete a WordPress user by ID.",
            _object(
                {
                    "id": _num("The user ID to delete"),
                    "reassign": _num("Reassign the deleted user's posts and links to this user ID"),
                    "force": _bool("Required to be true, as users do not support trashing"),
                },
                ["id", "force"],
            ),
        ),
        # Settings
        ("wp_get_settings", "Get WordPress site settings.", _object({})),
        (
            "wp_update_settings",
            "Update WordPress site settings.",
            _object({
                "title": _str("Site title"),
                "description": _str("Site tagline"),
                "url": _str("Site URL"),
                "email": _str("Site admin email address"),
                "timezone": _str("Timezone string"),
                "date_format": _str("Date format"),
                "time_format": _str("Time format"),
                "start_of_week": _num("Start of week (0=Sunday, 1=Monday, etc.)"),
                "language": _str("Site language code"),
                "use_smilies": _bool("Convert emoticons to graphics on display"),
                "default_category": _num("Default post category"),
                "default_post_format": _str("Default post format"),
                "posts_per_page": _num("Blog pages show at most"),
            }),
        ),
        # Search
        (
            "wp_search",
            "Search WordPress content across posts, pages, and other post types.",
            _object(
                {
                    "search": _str("Search keyword(s)"),
                    **_paging("results"),
                    "type": _str(
                        "Limit results to a specific type",
                        ["post", "page", "post-format", "category", "tag"],
                    ),
                    "subtype": _str("Limit results to posts of a specific post type"),
                },
                ["search"],
            ),
        ),
        # Taxonomies
        (
            "wp_list_taxonomies",
            "List all registered WordPress taxonomies.",
            _object({"type": _str("Limit results to taxonomies associated with a specific post type")}),
        ),
        (
            "wp_get_taxonomy",
            "Get a specific WordPress taxonomy by slug.",
            _object({"taxonomy": _str('The taxonomy slug (e.g., "category", "post_tag")')}, ["taxonomy"]),
        ),
        # Plugins
        (
            "wp_list_plugins",
            "List all WordPress plugins.",
            _object({
                "status": _str("Filter by plugin status", _PLUGIN_STATUSES),
                "search": _str("Search plugins by keyword"),
            }),
        ),
        (
            "wp_get_plugin",
            "Get a specific WordPress plugin by slug.",
            _object({"plugin": _PLUGIN_SLUG}, ["plugin"]),
        ),
        (
            "wp_create_plugin",
            "Install a new WordPress plugin from the WordPress.org repository.",
            _object(
                {
                    "slug": _str("The plugin slug from WordPress.org"),
                    "status": _str("The plugin status after installation", _PLUGIN_STATUSES),
                },
                ["slug"],
            ),
        ),
        (
            "wp_update_plugin",
            "Update a WordPress plugin (activate/deactivate).",
            _object({"plugin": _PLUGIN_SLUG, "status": _str("The plugin status", _PLUGIN_STATUSES)}, ["plugin", "status"]),
        ),
        (
            "wp_delete_plugin",
            "Delete/uninstall a WordPress plugin completely from the site. Use this tool when you "
            "need to remove a plugin entirely from WordPress. The plugin must be inactive before "
            "deletion. This permanently removes the plugin files from the server.",
            _object(
                {
                    "plugin": _str(
                        'The plugin slug in the format "folder/file.php" (e.g., "akismet/akismet.php", '
                        '"hello-dolly/hello.php"). This is the unique identifier for the plugin.'
                    ),
                },
                ["plugin"],
            ),
        ),
    ]

    return [ToolDefinition(name, description, schema) for name, description, schema in defs]


WORDPRESS_TOOLS: list[ToolDefinition] = _build_wordpress_tools()


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------


class WordPressToolExecutor:
    """Executes wp_* tools through a WordPressClient."""

    def __init__(self, client: WordPressClient) -> None:
        self._client = client

    def definitions(self) -> list[ToolDefinition]:
        return list(WORDPRESS_TOOLS)

    async def execute(
        self,
        name: str,
        tool_input: dict[str, Any],
        *,
        notify_watcher: bool = False,
    ) -> ToolResult:
        op = WP_OPERATIONS.get(name)
        if op is None:
            return ToolErr(kind="unknown_tool", message=f"Unknown WordPress tool: {name}")

        # Config checks happen before any network call
        if not self._client.configured:
            return ToolErr(kind="configuration_error", message=NOT_CONFIGURED)
        if op.auth_action and not self._client.has_credentials:
            return ToolErr(kind="configuration_error", message=_auth_required(op.auth_action))

        endpoint = op.endpoint
        remaining = dict(tool_input)
        if op.path_key:
            key_value = remaining.pop(op.path_key, None)
            if key_value is None or key_value == "":
                return ToolErr(kind="invalid_input", message=f"Missing required argument: {op.path_key}")
            endpoint = f"{endpoint}/{quote(str(key_value), safe='')}"

        params: dict[str, Any] | None = None
        data: dict[str, Any] | None = None
        if op.shape == "query":
            params = remaining
        elif op.shape == "body":
            data = remaining
        elif op.shape == "delete":
            params = {}
            if remaining.get("force"):
                params["force"] = True
            if remaining.get("reassign"):
                params["reassign"] = remaining["reassign"]

        try:
            response = await self._client.request(
                op.method,
                endpoint,
                params=params,
                data=data,
                auth=op.auth_action is not None,
            )
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            logger.warning("WordPress %s %s failed with %d", op.method, endpoint, status)
            return ToolErr(
                kind="upstream_error",
                message=f"Request failed with status code {status}",
                meta={"status": status, "data": _response_body(e.response)},
            )
        except httpx.RequestError as e:
            logger.warning("WordPress %s %s transport error: %s", op.method, endpoint, e)
            return ToolErr(kind="upstream_error", message=str(e) or type(e).__name__)
        except ConfigurationError as e:
            return ToolErr(kind=e.kind, message=e.message)

        payload: dict[str, Any] = {"success": True, "data": response.data}
        if op.paged:
            total = response.headers.get("x-wp-total")
            total_pages = response.headers.get("x-wp-totalpages")
            if total is not None:
                payload["total"] = total
            if total_pages is not None:
                payload["totalPages"] = total_pages
        if op.message:
            payload["message"] = op.message
        return ToolOk(payload)
