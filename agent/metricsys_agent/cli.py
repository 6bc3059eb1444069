"""
MetricSystem 注册 Agent 命令行入口模块。

提供 CLI 命令：run（前台运行 Agent）、check（验证配置文件）、
once（执行单轮注册）和 resolve（解析注册目标地址）。
"""
import asyncio
import logging
import signal
import socket
import sys

import click

from metricsys_agent import __version__
from metricsys_agent.config import build_catalog, load_config
from metricsys_agent.errors import AgentError


def _load(ctx):
    """加载配置，主机名未配置时自动获取。失败时输出错误并退出。"""
    config_path = ctx.obj["config_path"]
    try:
        cfg = load_config(config_path)
        catalog = build_catalog(cfg)
    except (FileNotFoundError, AgentError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if not cfg.source.host:
        cfg.source.host = socket.gethostname()
    return cfg, catalog


def _build_agent(cfg, catalog, **kwargs):
    from metricsys_agent.agent import RegistrationAgent

    try:
        return RegistrationAgent.from_config(cfg, catalog, **kwargs)
    except AgentError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)


@click.group(invoke_without_command=True)
@click.option("--config", "-c", default="/etc/metricsys/agent.yaml", help="Config file path")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(version=__version__)
@click.pass_context
def cli(ctx, config, verbose):
    """MetricSystem Agent - 计数器自注册代理。"""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose

    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # 未指定子命令时，显示基本信息
    if ctx.invoked_subcommand is None:
        click.echo(f"MetricSystem Agent v{__version__}")
        click.echo(f"Config: {config}")
        click.echo("Use --help for available commands")


@cli.command()
@click.pass_context
def run(ctx):
    """以前台模式运行 Agent，直到收到 SIGINT/SIGTERM。"""
    logger = logging.getLogger("metricsys-agent")
    cfg, catalog = _load(ctx)
    agent = _build_agent(cfg, catalog)

    logger.info(f"Starting MetricSystem Agent v{__version__}")
    logger.info(f"Destination: {cfg.destination.host}:{cfg.destination.port}")
    logger.info(f"Source: {cfg.source.host}:{cfg.source.port}")
    logger.info(f"Registration interval: {agent.effective_interval}s")
    logger.info(f"Counters: {len(catalog)}")

    loop = asyncio.new_event_loop()
    stopped = asyncio.Event()

    # 注册信号处理，优雅关闭
    def _shutdown(sig, frame):
        logger.info(f"Received {signal.Signals(sig).name}, shutting down...")
        loop.call_soon_threadsafe(stopped.set)

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    async def _serve():
        async with agent:
            await stopped.wait()

    try:
        loop.run_until_complete(_serve())
    except Exception:
        logger.exception("Agent crashed")
        sys.exit(1)
    finally:
        loop.close()


@cli.command()
@click.pass_context
def check(ctx):
    """验证配置文件是否正确。"""
    config_path = ctx.obj["config_path"]
    cfg, catalog = _load(ctx)
    agent = _build_agent(cfg, catalog)
    click.echo(f"✅ Config OK: {config_path}")
    click.echo(f"   Destination: {agent.destination_hostname}:{agent.destination_port}")
    click.echo(f"   Source: {agent.source_hostname}:{agent.source_port}")
    click.echo(f"   Machine function: {agent.machine_function or '(none)'}")
    click.echo(f"   Datacenter: {agent.datacenter or '(none)'}")
    click.echo(f"   Interval: {agent.effective_interval}s")
    click.echo(f"   Counters: {len(catalog)}")


class _RecordingSink:
    """收集单轮注册结果，供 once 命令输出。"""

    def __init__(self):
        self.failures = []
        self.successes = []
        self.resolution_error = None

    def resolution_failed(self, hostname, message):
        self.resolution_error = f"{hostname}: {message}"

    def registration_succeeded(self, uri):
        self.successes.append(uri)

    def registration_failed(self, uri, status_code, message):
        self.failures.append((uri, status_code, message))


@cli.command()
@click.pass_context
def once(ctx):
    """执行单轮注册并等待所有投递完成。"""
    cfg, catalog = _load(ctx)
    sink = _RecordingSink()
    agent = _build_agent(cfg, catalog, event_sink=sink)

    async def _once():
        # 只创建传输，不触发定时调度
        agent.start(schedule=False)
        try:
            rnd = await agent.run_round()
            await asyncio.gather(*rnd.deliveries, return_exceptions=True)
            return rnd
        finally:
            await agent.close()

    rnd = asyncio.run(_once())
    if sink.resolution_error:
        click.echo(f"❌ Resolution failed: {sink.resolution_error}", err=True)
        sys.exit(1)
    if not rnd.addresses:
        click.echo(f"❌ {cfg.destination.host} resolved to no addresses", err=True)
        sys.exit(1)
    for uri in sink.successes:
        click.echo(f"✅ {uri}")
    for uri, status, message in sink.failures:
        click.echo(f"❌ {uri} (status={status}): {message}")
    if sink.failures:
        sys.exit(1)


@cli.command()
@click.pass_context
def resolve(ctx):
    """解析注册目标主机名并输出地址列表。"""
    from metricsys_agent.delivery import build_registration_uri
    from metricsys_agent.resolver import resolve_host

    cfg, _ = _load(ctx)
    try:
        addresses = asyncio.run(resolve_host(cfg.destination.host, cfg.registration.request_timeout))
    except AgentError as e:
        click.echo(f"❌ {e}", err=True)
        sys.exit(1)
    for address in addresses:
        click.echo(build_registration_uri(address, cfg.destination.port))


def main():
    """CLI 入口函数。"""
    cli()


if __name__ == "__main__":
    main()
