import argparse
import asyncio
import json
import logging
from logging.config import dictConfig
import os
from typing import Any, Dict, Optional

import aiohttp
from aiohttp import web
import sentry_sdk
from sentry_sdk.integrations.aiohttp import AioHttpIntegration

from social.graze.atclient.app.config import Settings
from social.graze.atclient.app.metrics import MetricsClient, create_metrics_client
from social.graze.atclient.atproto.app_password import AppPasswordClient
from social.graze.atclient.atproto.oauth import OAuthClient
from social.graze.atclient.atproto.session import Session
from social.graze.atclient.atproto.xrpc import XrpcClient
from social.graze.atclient.errors import AtClientException
from social.graze.atclient.resolve.handle import HttpPdsResolver

logger = logging.getLogger(__name__)


def configure_logging():
    logging_config_file = os.getenv("LOGGING_CONFIG_FILE", "")

    if len(logging_config_file) > 0:
        with open(logging_config_file) as fl:
            dictConfig(json.load(fl))
        return

    logging.basicConfig()
    logging.getLogger().setLevel(logging.DEBUG)


async def _metrics_client(settings: Settings) -> MetricsClient:
    metrics_client = create_metrics_client(
        settings.metrics_backend,
        host=settings.statsd_host,
        port=settings.statsd_port,
        debug=settings.debug,
    )
    client = getattr(metrics_client, "client", None)
    if client is not None:
        await client.connect()
    return metrics_client


async def wait_for_callback(host: str, port: int) -> Dict[str, Optional[str]]:
    """
    Serve a single loopback callback and return its `code`, `state`, `iss` and `error`
    parameters.
    """
    loop = asyncio.get_running_loop()
    result: asyncio.Future[Dict[str, Optional[str]]] = loop.create_future()

    async def handle_callback(request: web.Request) -> web.Response:
        if not result.done():
            result.set_result(
                {
                    key: request.query.get(key, None)
                    for key in ("code", "state", "iss", "error", "error_description")
                }
            )
        return web.Response(text="Authorization complete. You may close this window.")

    app = web.Application()
    app.add_routes([web.get("/callback", handle_callback)])
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    await site.start()
    try:
        return await result
    finally:
        await runner.cleanup()


async def whoami(
    settings: Settings,
    http_session: aiohttp.ClientSession,
    session: Session,
    metrics_client: MetricsClient,
) -> Any:
    xrpc_client = XrpcClient(settings, http_session, session, metrics_client)
    return await xrpc_client.query("com.atproto.server.getSession")


async def oauth_login(
    settings: Settings,
    http_session: aiohttp.ClientSession,
    metrics_client: MetricsClient,
    subject: str,
    port: int,
    pds: Optional[str],
) -> None:
    oauth_client = OAuthClient(
        settings,
        http_session,
        resolver=HttpPdsResolver(http_session, settings.plc_hostname),
        metrics_client=metrics_client,
    )

    callback_url = f"http://127.0.0.1:{port}/callback"
    authorization = await oauth_client.start_authorization(subject, callback_url, pds)
    print(f"Open this URL to authorize:\n\n{authorization.url}\n")

    callback = await wait_for_callback("127.0.0.1", port)
    if callback.get("error") is not None:
        print(f"Authorization failed: {callback['error']} {callback.get('error_description') or ''}")
        return

    session = await oauth_client.complete_authorization(
        callback.get("code") or "",
        callback.get("state") or "",
        callback.get("iss"),
    )
    print(json.dumps(await whoami(settings, http_session, session, metrics_client), indent=2))
    await oauth_client.logout(session)


async def app_password_login(
    settings: Settings,
    http_session: aiohttp.ClientSession,
    metrics_client: MetricsClient,
    subject: str,
    password: str,
    pds: Optional[str],
) -> None:
    if pds is None:
        resolved = await HttpPdsResolver(http_session, settings.plc_hostname).resolve(subject)
        if resolved is None:
            print(f"Unable to resolve {subject}")
            return
        pds = resolved.pds

    app_password_client = AppPasswordClient(
        settings, http_session, metrics_client=metrics_client
    )
    session = await app_password_client.login(subject, password, pds)
    print(json.dumps(await whoami(settings, http_session, session, metrics_client), indent=2))
    await app_password_client.logout(session)


async def realMain() -> None:
    parser = argparse.ArgumentParser(
        prog="atclient", description="Authenticate against an AT Protocol PDS"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    login_parser = subparsers.add_parser("login", help="Log in with OAuth.")
    login_parser.add_argument("subject", help="Handle, DID or PDS URL.")
    login_parser.add_argument("--port", type=int, default=8085, help="Loopback callback port.")
    login_parser.add_argument("--pds", default=None, help="PDS URL, skips resolution.")

    app_password_parser = subparsers.add_parser(
        "app-password", help="Log in with an app password."
    )
    app_password_parser.add_argument("subject", help="Handle or DID.")
    app_password_parser.add_argument("password", help="App password.")
    app_password_parser.add_argument("--pds", default=None, help="PDS URL, skips resolution.")

    resolve_parser = subparsers.add_parser("resolve", help="Resolve handles and DIDs.")
    resolve_parser.add_argument("subject", nargs="+", help="The subject(s) to resolve.")

    args = parser.parse_args()

    settings = Settings()  # type: ignore
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            send_default_pii=False,
            integrations=[AioHttpIntegration()],
        )

    metrics_client = await _metrics_client(settings)
    timeout = aiohttp.ClientTimeout(total=settings.http_timeout)
    try:
        async with aiohttp.ClientSession(
            timeout=timeout, headers={"User-Agent": settings.user_agent}
        ) as http_session:
            if args.command == "login":
                await oauth_login(
                    settings, http_session, metrics_client, args.subject, args.port, args.pds
                )
            elif args.command == "app-password":
                await app_password_login(
                    settings,
                    http_session,
                    metrics_client,
                    args.subject,
                    args.password,
                    args.pds,
                )
            elif args.command == "resolve":
                resolver = HttpPdsResolver(http_session, settings.plc_hostname)
                for subject in args.subject:
                    print(f"resolved_subject {await resolver.resolve(subject)}")
    except AtClientException as e:
        logger.error(f"{e.kind.value}: {e.message}")
    finally:
        await metrics_client.close()


def invoke():
    configure_logging()
    asyncio.run(realMain())


if __name__ == "__main__":
    invoke()
