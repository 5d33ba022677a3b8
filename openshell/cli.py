"""openshell 命令行入口。"""

import asyncio
import signal
import sys
from typing import Callable, List

import click

from openshell import __version__
from openshell.config.settings import settings
from openshell.domain.exceptions import BusinessError
from openshell.providers.base import StreamCallbacks
from openshell.streaming import StreamEditController

LOCAL_CHAT_KEY = "local:cli"
STOP_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def install_stop_handlers(loop: asyncio.AbstractEventLoop, on_stop: Callable[[], None]) -> List[signal.Signals]:
    """SIGINT/SIGTERM 触发 on_stop，让正在运行的 CLI 子进程被终止后再退出。"""

    installed = []
    for sig in STOP_SIGNALS:
        try:
            loop.add_signal_handler(sig, on_stop)
        except NotImplementedError:
            # Windows 事件循环不支持，仍由 KeyboardInterrupt 处理
            continue
        installed.append(sig)
    return installed


@click.group()
@click.version_option(version=__version__, prog_name="openshell")
def cli():
    """OpenShell: bridge chat conversations to local codex/claude CLIs."""
    pass


@cli.command()
def run():
    """Start the Telegram bot (long polling) until interrupted."""
    from openshell.api.service import build_chat_service
    from openshell.bots.telegram_bot import TelegramBot
    from openshell.bots.telegram_client import TelegramClient

    if not settings.telegram_bot_token:
        raise click.ClickException("TELEGRAM_BOT_TOKEN is required.")
    try:
        service = build_chat_service(settings)
    except BusinessError as e:
        raise click.ClickException(e.message)

    async def _main() -> None:
        client = TelegramClient(
            settings.telegram_bot_token,
            base_url=settings.telegram_api_base,
            timeout=settings.telegram_poll_timeout + 30,
        )
        bot = TelegramBot(
            client,
            service,
            settings.stream_edit_interval,
            runtime_models={"codex": settings.codex_model, "claude": settings.claude_model},
        )
        install_stop_handlers(asyncio.get_running_loop(), bot.request_stop)
        try:
            await bot.run(poll_timeout=settings.telegram_poll_timeout)
        finally:
            await bot.stop()
            await client.aclose()

    try:
        asyncio.run(_main())
    except KeyboardInterrupt:
        click.echo("Shutting down.", err=True)


@cli.command()
@click.argument("text")
@click.option("--chat", "chat_key", default=LOCAL_CHAT_KEY, show_default=True, help="Conversation key")
def ask(text: str, chat_key: str):
    """Ask one question through the configured provider and stream the reply.

    Example:
        openshell ask "summarize README.md"
    """
    from openshell.api.service import get_default_service

    try:
        service = get_default_service()
    except BusinessError as e:
        raise click.ClickException(e.message)

    shown = {"text": ""}

    async def publish(value: str) -> None:
        # 快照是完整文本，只输出新增的部分
        if value.startswith(shown["text"]):
            click.echo(value[len(shown["text"]):], nl=False)
        else:
            click.echo("\n" + value, nl=False)
        shown["text"] = value

    async def on_status(status: str) -> None:
        click.echo(f"[{status}]", err=True)

    async def _main() -> int:
        editor = StreamEditController(publish, settings.stream_edit_interval)
        callbacks = StreamCallbacks(on_text=editor.queue, on_status=on_status)
        try:
            result = await service.ask_stream(chat_key, text, callbacks)
        except BusinessError as e:
            click.echo(f"\nerror: {e.message}", err=True)
            return 1
        await editor.flush(result.reply)
        click.echo("")
        return 0

    sys.exit(asyncio.run(_main()))


@cli.command()
@click.option("--chat", "chat_key", default=LOCAL_CHAT_KEY, show_default=True, help="Conversation key")
def reset(chat_key: str):
    """Delete the stored history and overrides of one conversation."""
    from openshell.api.service import open_session_store

    open_session_store(settings).reset(chat_key)
    click.echo(f"Conversation '{chat_key}' reset.")


def main():
    cli()


if __name__ == "__main__":
    main()
