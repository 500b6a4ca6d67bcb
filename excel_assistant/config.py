"""
配置管理模块
使用 pydantic-settings 管理应用配置
"""

from pathlib import Path
from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """应用配置类"""

    # Completion Service 配置
    openai_api_key: str = Field(default="", description="OpenAI API 密钥")
    openai_api_base: str = Field(
        default="https://api.openai.com/v1",
        description="OpenAI 兼容 API 基础地址"
    )
    openai_model: str = Field(default="gpt-4-turbo", description="使用的模型名称")
    temperature: float = Field(default=0.5, description="采样温度")
    max_tokens: int = Field(default=800, description="单次回复最大 token 数")
    history_window: int = Field(default=10, description="转发给模型的历史消息条数")

    # 操作默认值
    pivot_sheet_name: str = Field(default="PivotTable", description="透视表目标工作表")
    simple_pivot_sheet_name: str = Field(default="PivotData", description="简易透视表目标工作表")
    chart_title: str = Field(default="Chart from selected data", description="默认图表标题")

    # 服务器配置
    host: str = Field(default="0.0.0.0", description="服务器监听地址")
    port: int = Field(default=8000, description="服务器端口")
    debug: bool = Field(default=True, description="调试模式")

    # 文件路径配置
    base_dir: Path = Field(
        default_factory=lambda: Path(__file__).parent.parent,
        description="项目根目录"
    )

    @property
    def upload_dir(self) -> Path:
        """上传文件目录"""
        path = self.base_dir / "uploads"
        path.mkdir(exist_ok=True)
        return path

    @property
    def output_dir(self) -> Path:
        """输出文件目录"""
        path = self.base_dir / "outputs"
        path.mkdir(exist_ok=True)
        return path

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


# 全局配置实例（仅供 HTTP 入口构造协作对象使用）
settings = Settings()
