"""
FastAPI 应用入口
"""

import uuid
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, File, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse

from excel_assistant.config import settings
from excel_assistant.core.action_executor import ActionExecutor
from excel_assistant.core.completion_service import CompletionService, OpenAICompletionService
from excel_assistant.core.conversation import ConversationBusyError, ConversationOrchestrator
from excel_assistant.core.intent_classifier import IntentClassifier
from excel_assistant.core.spreadsheet_port import WorksheetError
from excel_assistant.core.workbook_port import WorkbookPort
from excel_assistant.models import (
    ActionCallRequest,
    ActionOutcome,
    ChatRequest,
    ChatResponse,
    ColumnAnalysis,
    ConversationMessage,
    SelectRequest,
    SessionResponse,
)


@dataclass
class Session:
    """一个上传的工作簿及其对话状态"""
    path: Path
    original_name: str
    port: WorkbookPort
    executor: ActionExecutor
    orchestrator: ConversationOrchestrator


# 创建 FastAPI 应用
app = FastAPI(
    title="Excel 对话助手",
    description="用自然语言对选中的表格数据执行求和、透视、图表和公式操作",
    version="1.0.0"
)

# CORS 配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# 全局存储（实际生产环境应使用数据库/Redis）
sessions: Dict[str, Session] = {}  # session_id -> Session
completion_service: Optional[CompletionService] = None


def get_completion_service() -> CompletionService:
    """获取补全服务实例（所有会话共用）"""
    global completion_service
    if completion_service is None:
        completion_service = OpenAICompletionService(
            api_key=settings.openai_api_key,
            api_base=settings.openai_api_base,
            model=settings.openai_model,
            temperature=settings.temperature,
            max_tokens=settings.max_tokens,
            history_window=settings.history_window
        )
    return completion_service


def create_session(path: Path, original_name: str, port: WorkbookPort) -> str:
    """为工作簿创建会话，组装执行器、识别器和对话编排器"""
    executor = ActionExecutor(
        port,
        pivot_sheet_name=settings.pivot_sheet_name,
        simple_pivot_sheet_name=settings.simple_pivot_sheet_name,
        chart_title=settings.chart_title
    )
    orchestrator = ConversationOrchestrator(
        port,
        executor,
        IntentClassifier(chart_title=settings.chart_title),
        get_completion_service(),
        history_window=settings.history_window
    )
    session_id = str(uuid.uuid4())
    sessions[session_id] = Session(path, original_name, port, executor, orchestrator)
    return session_id


def get_session(session_id: str) -> Session:
    session = sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="会话不存在或已过期")
    return session


@app.on_event("startup")
async def startup_event():
    """应用启动时初始化"""
    settings.upload_dir.mkdir(exist_ok=True)
    settings.output_dir.mkdir(exist_ok=True)
    print(f"📁 上传目录: {settings.upload_dir}")
    print(f"📁 输出目录: {settings.output_dir}")
    if not settings.openai_api_key:
        print("⚠️ 未配置 OPENAI_API_KEY，对话只能执行表格操作")
    print(f"🚀 Excel 对话助手已启动")


# ============ API 路由 ============

@app.post("/api/upload", response_model=SessionResponse)
async def upload_file(file: UploadFile = File(...)):
    """
    上传 Excel 文件并创建对话会话

    - 只支持 .xlsx 格式
    - 返回会话 ID 和初始问候消息
    """
    if not file.filename:
        raise HTTPException(status_code=400, detail="文件名不能为空")

    ext = Path(file.filename).suffix.lower()
    if ext != ".xlsx":
        raise HTTPException(status_code=400, detail="只支持 .xlsx 格式")

    content = await file.read()
    try:
        port = WorkbookPort.load(BytesIO(content))
    except Exception as e:
        raise HTTPException(status_code=400, detail=f"无法读取工作簿: {e}")

    save_path = settings.upload_dir / f"{uuid.uuid4()}{ext}"
    save_path.write_bytes(content)

    session_id = create_session(save_path, file.filename, port)
    print(f"✓ 新会话 {session_id}: {file.filename}")

    return SessionResponse(
        success=True,
        session_id=session_id,
        messages=sessions[session_id].orchestrator.get_messages(),
        message="文件上传成功"
    )


@app.post("/api/select")
async def select_range(request: SelectRequest):
    """设置当前选区"""
    session = get_session(request.session_id)
    try:
        session.port.select(request.address)
    except (WorksheetError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"无效的选区: {e}")

    snapshot = await session.port.get_selection()
    return {"success": True, "selection": snapshot}


@app.post("/api/chat", response_model=ChatResponse)
async def chat(request: ChatRequest):
    """发送一条消息，返回本轮新增的消息"""
    session = get_session(request.session_id)
    try:
        messages = await session.orchestrator.submit(request.text)
    except ConversationBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return ChatResponse(messages=messages, error=session.orchestrator.last_error)


@app.get("/api/sessions/{session_id}/messages", response_model=List[ConversationMessage])
async def get_messages(session_id: str):
    """获取完整对话历史"""
    return get_session(session_id).orchestrator.get_messages()


@app.post("/api/actions", response_model=ActionOutcome)
async def execute_action(request: ActionCallRequest):
    """直接执行结构化操作（不经过意图识别）"""
    session = get_session(request.session_id)
    return await session.executor.execute(request.action)


@app.get("/api/sessions/{session_id}/history")
async def get_operation_history(session_id: str):
    """获取操作历史和执行日志"""
    executor = get_session(session_id).executor
    return {
        "operations": executor.get_operation_history(),
        "log": executor.get_log()
    }


@app.get("/api/sessions/{session_id}/analysis", response_model=ColumnAnalysis)
async def analyze_selection(session_id: str):
    """分析当前选区的列类型"""
    return await get_session(session_id).executor.analyze_selection()


@app.post("/api/sessions/{session_id}/connection-test")
async def connection_test(session_id: str):
    """测试工作簿读写"""
    success = await get_session(session_id).executor.check_connection()
    return {"success": success}


@app.get("/api/sessions/{session_id}/download")
async def download_file(session_id: str):
    """下载当前工作簿（包含已提交的修改）"""
    session = get_session(session_id)
    download_name = f"processed_{Path(session.original_name).stem}.xlsx"
    output_path = session.port.save(settings.output_dir / f"{session_id}.xlsx")

    return FileResponse(
        path=output_path,
        filename=download_name,
        media_type="application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    )


# ============ 健康检查 ============

@app.get("/health")
async def health_check():
    """健康检查"""
    return {
        "status": "healthy",
        "llm_configured": bool(settings.openai_api_key),
        "sessions": len(sessions)
    }


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "excel_assistant.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug
    )
