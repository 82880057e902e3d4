import asyncio
import json
import signal
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from .. import __version__
from ..config import Config
from ..errors import ChatEngineError
from ..memory.chat_store import JsonChatRepository
from ..model_client import OpenAIModelClient
from ..persona import Character, CharacterFieldProfile, UserProfile, UserFieldProfile
from ..protocol import ChatMode, Event, OutputLanguage
from ..session import ChatSession, MessageView
from ..utils.logger import logger


# 全局变量
console = Console()
app = typer.Typer(name="simutalk", help="SimuTalk - 角色扮演聊天")


class SimuTalkCLI:
    """SimuTalk CLI控制器"""

    def __init__(self, config: Config, character: Character, user: UserProfile):
        self.config = config
        self.character = character
        self.user = user
        self.session: Optional[ChatSession] = None
        self.running = False

    async def start(self):
        """启动CLI"""
        try:
            repository = JsonChatRepository(self.config.data_dir)
            chat = repository.get_or_create_for_character(self.character.id)
            self.session = ChatSession(
                chat,
                self.character,
                self.user,
                self.config,
                client=OpenAIModelClient(self.config),
                summarizer=OpenAIModelClient.for_summary(self.config),
                translator=OpenAIModelClient.for_translation(self.config),
                repository=repository,
            )

            self.show_start_UI()
            self._show_history()

            self.running = True
            loop = asyncio.get_running_loop()
            try:
                loop.add_signal_handler(signal.SIGINT, self._on_interrupt)
            except NotImplementedError:
                # Windows 上没有 add_signal_handler，Ctrl+C 直接退出
                pass

            event_task = asyncio.create_task(self._handle_events())
            input_task = asyncio.create_task(self._handle_user_input())

            await input_task
            event_task.cancel()
            try:
                await event_task
            except asyncio.CancelledError:
                pass

        except Exception as e:
            console.print(f"[red]启动失败: {e}[/red]")
            logger.error(f"CLI 启动失败: {e}", exc_info=True)
        finally:
            await self.stop()

    def show_start_UI(self):
        """显示启动UI"""
        chat = self.session.chat
        console.print(Panel.fit(
            f"[bold green]SimuTalk 已启动[/bold green]\n"
            f"角色: {self.character.name}\n"
            f"用户: {self.user.name}\n"
            f"模型: {self.config.model}\n"
            f"模式: {chat.mode.value}\n"
            f"输出语言: {chat.output_language.display_name}\n"
            f"消息 / 记忆: {len(chat.messages)} / {len(chat.memory_summaries)}",
            title="💬 SimuTalk"
        ))

    async def stop(self):
        """停止CLI"""
        self.running = False
        if self.session:
            self.session.coordinator.cancel_all()
        console.print("[green]SimuTalk已关闭[/green]")

    def _on_interrupt(self):
        """Ctrl+C：有生成进行中时取消生成，否则退出"""
        if self.session and self.session.cancel_generation():
            console.print("\n[yellow]已取消当前生成[/yellow]")
            return
        console.print("\n[yellow]收到中断信号，正在关闭...（按回车结束）[/yellow]")
        self.running = False

    async def _handle_events(self):
        """处理事件流"""
        while self.running:
            event = await self.session.event_handler.get_next_event()
            if event is not None:
                self._process_event(event)

    def _process_event(self, event: Event):
        """处理单个事件"""
        msg = event.msg

        if msg.type == "generation_started":
            console.print(f"[dim]💭 {self.character.name} 正在输入...[/dim]")

        elif msg.type == "generation_delta":
            console.print(msg.data.get("chunk", ""), end="", style="dim", highlight=False)

        elif msg.type == "character_message":
            if self.config.streaming:
                console.print()
            view = self._find_view(msg.data.get("message_id"))
            if view is not None:
                self._print_message(view, self._number_of(view.id))

        elif msg.type == "branch_added":
            if self.config.streaming:
                console.print()
            view = self._find_view(msg.data.get("message_id"))
            if view is not None:
                self._print_message(view, self._number_of(view.id))

        elif msg.type == "generation_cancelled":
            console.print("[yellow]⏹ 生成已取消[/yellow]")

        elif msg.type == "compaction_complete":
            action = msg.data.get("action")
            if action != "none":
                console.print(
                    f"[dim]🧠 记忆整理[{action}]: {msg.data.get('tokens_before')} → "
                    f"{msg.data.get('tokens_after')} tokens[/dim]"
                )

        elif msg.type == "error":
            error_msg = msg.data.get("message", "未知错误")
            console.print(f"[red]❌ 错误: {error_msg}[/red]")

    def _find_view(self, message_id: Optional[str]) -> Optional[MessageView]:
        for view in self.session.messages():
            if view.id == message_id:
                return view
        return None

    def _number_of(self, message_id: str) -> int:
        for i, view in enumerate(self.session.messages(), 1):
            if view.id == message_id:
                return i
        return 0

    def _print_message(self, view: MessageView, number: int):
        name = self.user.name if view.is_user else self.character.name
        title = f"#{number} {'👤' if view.is_user else '🎭'} {name}"
        if view.branch_count:
            title += f"  [{view.branch_index}/{view.branch_count}]"

        body = Text(view.content)
        if view.has_image:
            body.append("\n[图片]", style="dim")
        if view.translated_content:
            body.append(f"\n{view.translated_content}", style="dim italic")

        border = "red" if view.is_error else ("green" if view.is_user else "blue")
        console.print(Panel(body, title=title, title_align="left", border_style=border))

    def _show_history(self, limit: int = 10):
        views = self.session.messages()
        start = max(0, len(views) - limit)
        for i, view in enumerate(views[start:], start + 1):
            self._print_message(view, i)

    def _message_id(self, number: str) -> str:
        views = self.session.messages()
        index = int(number)
        if not 1 <= index <= len(views):
            raise ValueError(f"消息编号超出范围: {number}")
        return views[index - 1].id

    async def _handle_user_input(self):
        """处理用户输入"""
        console.print("\n[bold cyan]输入消息 (/help 查看命令, /exit 退出):[/bold cyan]")

        while self.running:
            try:
                user_input = await self._get_user_input()
            except EOFError:
                break

            if not self.running:
                break
            user_input = user_input.strip()
            if not user_input:
                continue

            try:
                if user_input.startswith("/"):
                    if not await self._handle_command(user_input):
                        break
                else:
                    await self.session.send_user_message(user_input)
            except (ChatEngineError, ValueError) as e:
                console.print(f"[red]{e}[/red]")

        self.running = False

    async def _handle_command(self, line: str) -> bool:
        """执行斜杠命令，返回 False 表示退出"""
        parts = line.split(maxsplit=2)
        command = parts[0].lower()
        args = parts[1:]

        if command in ("/exit", "/quit", "/q"):
            return False

        if command in ("/help", "/h"):
            self._show_help()
        elif command == "/list":
            self._show_history(limit=len(self.session.chat.messages))
        elif command == "/t":
            text = line[len("/t"):].strip()
            await self.session.send_user_message(text, translate=True)
            self._show_history(limit=1)
        elif command == "/reply":
            await self.session.request_reply()
        elif command == "/first":
            await self.session.request_first_message()
        elif command == "/regen":
            target = self._message_id(args[0]) if args else self._last_character_id()
            await self.session.regenerate(target)
        elif command == "/edit":
            if len(args) < 2:
                raise ValueError("用法: /edit <编号> <新内容>")
            await self.session.edit_user_message(self._message_id(args[0]), args[1])
        elif command == "/branch":
            if len(args) < 2:
                raise ValueError("用法: /branch <编号> <分支索引>")
            await self.session.select_branch(self._message_id(args[0]), int(args[1]))
            self._show_history()
        elif command == "/translate":
            if not args:
                raise ValueError("用法: /translate <编号>")
            message_id = self._message_id(args[0])
            text = await self.session.translate_message(message_id, retranslate=len(args) > 1)
            console.print(Panel(Text(text), title="🌐 翻译", border_style="cyan"))
        elif command == "/memory":
            self._show_memory()
        elif command == "/auto":
            chat = self.session.chat
            mode = ChatMode.DIRECT if chat.mode == ChatMode.AUTOPILOT else ChatMode.AUTOPILOT
            await self.session.set_mode(mode)
            console.print(f"[cyan]模式: {mode.value}[/cyan]")
        elif command == "/scenario":
            await self.session.set_autopilot_scenario(line[len("/scenario"):].strip())
            console.print("[cyan]已设置自动进行场景[/cyan]")
        elif command == "/step":
            await self.session.autopilot_step()
        elif command == "/lang":
            if not args:
                raise ValueError("用法: /lang korean|english|japanese|chinese")
            await self.session.set_output_language(OutputLanguage(args[0].lower()))
            console.print(f"[cyan]输出语言: {self.session.language.display_name}[/cyan]")
        elif command == "/cancel":
            if not self.session.cancel_generation():
                console.print("[dim]当前没有进行中的生成[/dim]")
        elif command == "/status":
            self._show_status()
        else:
            console.print(f"[red]未知命令: {command}[/red]")
        return True

    def _last_character_id(self) -> str:
        for view in reversed(self.session.messages()):
            if not view.is_user:
                return view.id
        raise ValueError("还没有角色消息")

    async def _get_user_input(self) -> str:
        """异步获取用户输入"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, input, "\n> ")

    def _show_help(self):
        """显示帮助信息"""
        help_text = """
[bold]对话:[/bold]
- 直接输入        发送消息
- /t <文本>       翻译成输出语言后发送（不请求回复）
- /reply          让角色回复最后一条消息
- /first          让角色发送第一条消息

[bold]分支:[/bold]
- /regen [编号]          重新生成角色消息（默认最后一条）
- /edit <编号> <内容>    编辑用户消息并重新生成回复
- /branch <编号> <索引>  切换分支（0 为原始内容）

[bold]其他:[/bold]
- /list              显示全部消息
- /translate <编号>  翻译消息（追加任意参数强制重新翻译）
- /memory            查看长期记忆
- /auto              切换自动进行模式
- /scenario <文本>   设置自动进行场景
- /step              自动进行一步
- /lang <语言>       设置输出语言
- /cancel, Ctrl+C    取消当前生成
- /status            显示状态
- /exit              退出
        """
        console.print(Panel(help_text.strip(), title="帮助", border_style="cyan"))

    def _show_memory(self):
        summaries = self.session.memory_summaries()
        if not summaries:
            console.print("[dim]还没有长期记忆[/dim]")
            return
        for i, summary in enumerate(summaries, 1):
            span = f"{summary.start_time:%Y-%m-%d %H:%M} ~ {summary.end_time:%Y-%m-%d %H:%M}"
            console.print(Panel(
                Text(summary.content),
                title=f"🧠 记忆 {i} ({span}, {len(summary.summarized_message_ids)} 条消息)",
                border_style="magenta",
            ))

    def _show_status(self):
        """显示状态信息"""
        status, request_id = self.session.generation_state()
        manager = self.session.compaction_manager
        metrics = manager.get_metrics()
        strategy = manager.strategy.get_metadata()
        chat = self.session.chat
        status_text = f"""
[bold]生成状态:[/bold] {status.value}{f' ({request_id[:8]})' if request_id else ''}
[bold]模式:[/bold] {chat.mode.value}
[bold]输出语言:[/bold] {chat.output_language.display_name}
[bold]消息 / 记忆:[/bold] {len(chat.messages)} / {len(chat.memory_summaries)}
[bold]压缩策略:[/bold] {strategy.name} v{strategy.version}
[bold]压缩:[/bold] 运行 {metrics.runs}, 失败 {metrics.failures} (连续 {metrics.consecutive_failures}), 节省 {metrics.tokens_saved} tokens
        """
        console.print(Panel(status_text.strip(), title="状态", border_style="blue"))


def _load_character(path: Optional[Path], name: Optional[str]) -> Character:
    if path:
        return Character.from_dict(json.loads(path.read_text(encoding="utf-8")))
    character_name = name or "캐릭터"
    return Character(
        id=f"cli-{character_name}",
        field_profile=CharacterFieldProfile(name=character_name),
    )


def _load_user(path: Optional[Path], name: Optional[str]) -> UserProfile:
    if path:
        return UserProfile.from_dict(json.loads(path.read_text(encoding="utf-8")))
    return UserProfile(field_profile=UserFieldProfile(name=name or "유저"))


# CLI命令定义

@app.command()
def chat(
    character_file: Optional[Path] = typer.Option(None, "--character", "-c", help="角色 JSON 文件"),
    character_name: Optional[str] = typer.Option(None, "--name", "-n", help="未提供角色文件时使用的角色名"),
    user_file: Optional[Path] = typer.Option(None, "--user", "-u", help="用户人设 JSON 文件"),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="AI模型名称"),
    language: Optional[str] = typer.Option(None, "--language", "-l", help="输出语言"),
    no_stream: bool = typer.Option(False, "--no-stream", help="关闭流式响应"),
):
    """启动聊天模式"""
    overrides = {}
    if model:
        overrides["model"] = model
    if language:
        overrides["output_language"] = language
    if no_stream:
        overrides["streaming"] = False

    try:
        config = Config(**overrides)
        character = _load_character(character_file, character_name)
        user = _load_user(user_file, None)
    except (ValueError, OSError) as e:
        console.print(f"[red]配置错误: {e}[/red]")
        raise typer.Exit(1)

    logger.set_level(config.log_level)

    cli = SimuTalkCLI(config, character, user)
    try:
        asyncio.run(cli.start())
    except KeyboardInterrupt:
        pass


@app.command()
def chats(
    data_dir: Optional[Path] = typer.Option(None, "--dir", "-d", help="聊天存储目录"),
    limit: int = typer.Option(10, "--limit", "-n", help="显示最近N个聊天"),
):
    """列出已保存的聊天"""
    if not data_dir:
        data_dir = Path.home() / ".simutalk" / "chats"

    if not data_dir.exists():
        console.print(f"[yellow]聊天目录不存在: {data_dir}[/yellow]")
        return

    all_chats = JsonChatRepository(data_dir).list_chats()
    if not all_chats:
        console.print("[yellow]未找到任何聊天记录[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("序号", style="dim", width=4)
    table.add_column("聊天 ID", style="cyan")
    table.add_column("角色", style="green")
    table.add_column("模式", style="yellow")
    table.add_column("消息", justify="right")
    table.add_column("记忆", justify="right")
    table.add_column("更新时间", style="blue")

    for i, item in enumerate(all_chats[:limit], 1):
        table.add_row(
            str(i),
            item.id[:8] + "...",
            item.character_id,
            item.mode.value,
            str(len(item.messages)),
            str(len(item.memory_summaries)),
            item.updated_at.strftime("%Y-%m-%d %H:%M:%S"),
        )

    console.print(table)
    console.print(f"\n[dim]总计: {len(all_chats)} 个聊天[/dim]")
    console.print(f"[dim]聊天目录: {data_dir}[/dim]")


@app.command()
def version():
    """显示版本信息"""
    console.print(f"SimuTalk v{__version__}")


def main():
    """主入口函数"""
    app()


if __name__ == "__main__":
    main()
