"""Permission arbitration for decision-needed events."""

from __future__ import annotations

import json
from collections import deque
from enum import Enum

from claude_web_bridge.application.models import (
    AskUserQuestionRequest,
    FollowUp,
    PermissionMode,
    PlanModeRequest,
    ToolPermissionRequest,
    ToolResultContent,
)
from claude_web_bridge.application.stream_processor import EXIT_PLAN_MODE_TOOL
from claude_web_bridge.infrastructure.logging import get_logger

logger = get_logger(__name__)

CONTINUE_MESSAGE = "continue"
ACCEPT_PLAN_MESSAGE = "accept"
QUESTION_CANCELLED_MESSAGE = "User cancelled the question."


class ToolPermissionDecision(str, Enum):
    """ツール許可要求への回答."""

    ALLOW_ONCE = "allow_once"
    ALLOW_PERMANENTLY = "allow_permanently"
    DENY = "deny"


class PlanDecision(str, Enum):
    """プラン承認要求への回答."""

    ACCEPT_WITH_EDITS = "accept_with_edits"
    ACCEPT_DEFAULT = "accept_default"
    KEEP_PLANNING = "keep_planning"


class PermissionArbitrator:
    """
    判断が必要なイベントを保持し、ユーザーの回答を次ターンの内容に変換する.

    状態:
    - ツール許可要求（最新の1件のみ）
    - プラン承認要求（最新の1件のみ）
    - 質問キュー（到着順、置き換えない）
    - セッションの権限モードと永続的な許可ツールリスト

    I/Oは行わず、回答の結果として送るべき FollowUp を返す.
    """

    def __init__(
        self,
        allowed_tools: list[str] | None = None,
        permission_mode: PermissionMode = PermissionMode.DEFAULT,
    ) -> None:
        """
        Initialize PermissionArbitrator.

        Args:
            allowed_tools: セッション開始時の許可ツールリスト
            permission_mode: セッション開始時の権限モード
        """
        self._allowed_tools: list[str] = list(allowed_tools or [])
        self._permission_mode = permission_mode
        self._tool_permission_request: ToolPermissionRequest | None = None
        self._plan_mode_request: PlanModeRequest | None = None
        self._questions: deque[AskUserQuestionRequest] = deque()

    @property
    def allowed_tools(self) -> list[str]:
        """永続的な許可ツールリストのコピー."""
        return list(self._allowed_tools)

    @property
    def permission_mode(self) -> PermissionMode:
        """現在の権限モード."""
        return self._permission_mode

    @property
    def tool_permission_request(self) -> ToolPermissionRequest | None:
        """回答待ちのツール許可要求."""
        return self._tool_permission_request

    @property
    def plan_mode_request(self) -> PlanModeRequest | None:
        """回答待ちのプラン承認要求."""
        return self._plan_mode_request

    @property
    def current_question(self) -> AskUserQuestionRequest | None:
        """キューの先頭の質問."""
        return self._questions[0] if self._questions else None

    @property
    def pending_question_count(self) -> int:
        """回答待ちの質問数."""
        return len(self._questions)

    @property
    def is_dialog_open(self) -> bool:
        """何らかの回答待ちがあるかどうか."""
        return (
            self._tool_permission_request is not None
            or self._plan_mode_request is not None
            or bool(self._questions)
        )

    def set_permission_mode(self, mode: PermissionMode) -> None:
        """
        権限モードを変更する.

        Args:
            mode: 新しい権限モード
        """
        self._permission_mode = mode

    def reset(self) -> None:
        """新しい会話のために状態を初期化する."""
        self._allowed_tools.clear()
        self._permission_mode = PermissionMode.DEFAULT
        self._tool_permission_request = None
        self._plan_mode_request = None
        self._questions.clear()

    def on_permission_error(
        self, request: ToolPermissionRequest, plan_content: str = ""
    ) -> None:
        """
        権限不足エラーを回答待ちとして保持する.

        パターンに ExitPlanMode を含む場合はプラン承認要求として扱う.
        既存の同種の要求は置き換えられる.

        Args:
            request: ツール許可要求
            plan_content: ExitPlanModeの場合のプラン本文
        """
        if EXIT_PLAN_MODE_TOOL in request.patterns:
            self._plan_mode_request = PlanModeRequest(plan_content=plan_content)
            logger.info("Plan approval requested", tool_use_id=request.tool_use_id)
            return

        self._tool_permission_request = request
        logger.info(
            "Tool permission requested",
            tool_name=request.tool_name,
            patterns=request.patterns,
        )

    def on_ask_user_question(self, request: AskUserQuestionRequest) -> None:
        """
        質問をキューの末尾に追加する.

        Args:
            request: 質問
        """
        self._questions.append(request)
        logger.info(
            "Question queued",
            tool_use_id=request.tool_use_id,
            pending=len(self._questions),
        )

    def resolve_tool_permission(self, decision: ToolPermissionDecision) -> FollowUp | None:
        """
        ツール許可要求に回答する.

        Args:
            decision: 回答

        Returns:
            許可した場合は "continue" を送るFollowUp、拒否または要求がない場合None
        """
        request = self._tool_permission_request
        if request is None:
            logger.warning("No pending tool permission request", decision=decision.value)
            return None
        self._tool_permission_request = None

        if decision is ToolPermissionDecision.DENY:
            logger.info("Tool permission denied", tool_name=request.tool_name)
            return None

        if decision is ToolPermissionDecision.ALLOW_PERMANENTLY:
            self._allowed_tools = [*self._allowed_tools, *request.patterns]
            tools = list(self._allowed_tools)
        else:
            tools = [*self._allowed_tools, *request.patterns]

        logger.info(
            "Tool permission granted",
            tool_name=request.tool_name,
            decision=decision.value,
        )
        return FollowUp(message=CONTINUE_MESSAGE, allowed_tools=tools)

    def resolve_plan(self, decision: PlanDecision) -> FollowUp | None:
        """
        プラン承認要求に回答する.

        Args:
            decision: 回答

        Returns:
            承認した場合は "accept" を送るFollowUp、計画継続または要求がない場合None
        """
        if self._plan_mode_request is None:
            logger.warning("No pending plan approval request", decision=decision.value)
            return None
        self._plan_mode_request = None

        if decision is PlanDecision.KEEP_PLANNING:
            self._permission_mode = PermissionMode.PLAN
            return None

        mode = (
            PermissionMode.ACCEPT_EDITS
            if decision is PlanDecision.ACCEPT_WITH_EDITS
            else PermissionMode.DEFAULT
        )
        self._permission_mode = mode
        logger.info("Plan accepted", permission_mode=mode.value)
        return FollowUp(
            message=ACCEPT_PLAN_MESSAGE,
            allowed_tools=list(self._allowed_tools),
            permission_mode=mode,
        )

    def resolve_question(self, answers: dict[str, str] | None) -> FollowUp | None:
        """
        先頭の質問に回答する.

        Args:
            answers: 質問ごとの回答. Noneの場合はキャンセルとして扱う

        Returns:
            ツール結果を送るFollowUp、質問がない場合None
        """
        if not self._questions:
            logger.warning("No pending question")
            return None
        question = self._questions.popleft()

        if answers is None:
            content = QUESTION_CANCELLED_MESSAGE
            is_error = True
        else:
            content = json.dumps(answers, ensure_ascii=False)
            is_error = False

        return FollowUp(
            message=content,
            allowed_tools=list(self._allowed_tools),
            tool_result=ToolResultContent(
                tool_use_id=question.tool_use_id,
                content=content,
                is_error=is_error,
            ),
        )
