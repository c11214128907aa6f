"""CATE — application entry point.

Boots the FastAPI internal server and provides the CLI entry point for
serve, run, once and keygen modes.
"""

import logging
from dataclasses import replace

from fastapi import FastAPI

from cate.api.routers import router

app = FastAPI(title="CATE Trust Engine API", version="0.1.0")
app.include_router(router)

logger = logging.getLogger("cate")


def build_pipeline(config, settings, keypair, repo=None):
    """Wire the engine components for one process.

    ``require_live_oracle`` is enforced when either the environment or the
    settings file asks for it.
    """
    from cate.crypto.attestation import AttestationEngine
    from cate.failsafe.circuit_breaker import CircuitBreaker
    from cate.observability.history import DecisionLog
    from cate.pipeline import DecisionPipeline
    from cate.risk.evaluator import RiskEvaluator

    params = replace(
        settings.risk_parameters,
        require_live_oracle=(
            settings.risk_parameters.require_live_oracle or config.require_live_oracle
        ),
    )
    return DecisionPipeline(
        attestation=AttestationEngine(keypair),
        evaluator=RiskEvaluator(params),
        breaker=CircuitBreaker(settings.circuit_breaker),
        history=DecisionLog(max_entries=config.history_size),
        repo=repo,
    )


def _load_signer(config):
    """Signer from the environment, or an ephemeral one in development."""
    from cate.crypto.keys import generate_keypair, load_keypair

    if config.signer_secret:
        return load_keypair(config.signer_secret)
    keypair = generate_keypair()
    logger.warning(
        "No CATE_SIGNER_SECRET set — using EPHEMERAL signer %s. "
        "Decisions will not verify against a configured trust anchor.",
        keypair.public_key_base58,
    )
    return keypair


# ── CLI ──────────────────────────────────────────────────────────────────


def _run_cli() -> None:
    """Parse CLI arguments and dispatch to the appropriate mode."""
    import argparse
    import asyncio

    from cate.chain.rpc_client import SolanaRpcClient
    from cate.config import load_config, load_settings
    from cate.crypto.keys import export_keypair, generate_keypair
    from cate.oracle.hermes_client import HermesClient, OracleFeed
    from cate.repos.db import init_db
    from cate.repos.decision_repo import DecisionRepo

    parser = argparse.ArgumentParser(description="CATE confidence-aware trust engine")
    parser.add_argument(
        "--mode",
        choices=["serve", "run", "once", "keygen"],
        default="run",
        help="serve = API only, run = API + oracle pipeline, "
             "once = single oracle poll, keygen = print a new signer keypair",
    )
    parser.add_argument("--settings", help="Path to cate.json (default: repo root)")
    args = parser.parse_args()

    if args.mode == "keygen":
        exported = export_keypair(generate_keypair())
        print(f"CATE_SIGNER_SECRET={exported['secret_key']}")
        print(f"# public key: {exported['public_key']}")
        return

    config = load_config()
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    settings = load_settings(args.settings)
    init_db(config.db_path)
    repo = DecisionRepo(config.db_path)
    pipeline = build_pipeline(config, settings, _load_signer(config), repo=repo)

    from cate.api.routers import configure_routers

    configure_routers(
        pipeline=pipeline,
        repo=repo,
        rpc_client=SolanaRpcClient(config.rpc_endpoint, config.program_id),
        program_id=config.program_id,
        timestamp_tolerance=config.timestamp_tolerance_seconds,
        sign_rate_limit=config.sign_rate_limit_per_minute,
    )

    feed = OracleFeed(
        client=HermesClient(config.hermes_endpoint),
        assets=settings.enabled_assets,
        on_sample=pipeline.process,
        on_state=pipeline.on_connection_state,
        poll_interval=config.poll_interval_seconds,
    )

    if args.mode == "once":
        asyncio.run(_run_once(pipeline, feed, settings))
    elif args.mode == "serve":
        asyncio.run(_run_server(config.api_port))
    else:
        asyncio.run(_run_service(feed, config.api_port, len(settings.enabled_assets)))


async def _run_once(pipeline, feed, settings) -> None:
    """Poll the oracle once and print each asset's decision."""
    from cate.cli.dashboard import print_circuit, print_decision

    await feed.run(max_polls=1)
    for asset in settings.enabled_assets:
        entry = pipeline.latest(asset.asset_id)
        if entry is None:
            logger.warning("No decision produced for %s", asset.asset_id)
            continue
        print_decision(entry)
    print_circuit(pipeline.breaker.status().to_dict())


async def _run_server(port: int) -> None:
    import uvicorn

    uvi_config = uvicorn.Config(app, host="0.0.0.0", port=port, log_level="info")
    server = uvicorn.Server(uvi_config)
    logger.info("CATE API available at http://localhost:%d", port)
    await server.serve()


async def _run_service(feed, port: int, asset_count: int) -> None:
    """Start the API server and the oracle pipeline concurrently."""
    import asyncio

    logger.info("Starting CATE with %d asset feed(s).", asset_count)

    async def _serve_then_stop():
        await _run_server(port)
        logger.info("API server stopped — stopping oracle feed.")
        feed.stop()

    results = await asyncio.gather(
        _serve_then_stop(),
        feed.run(),
        return_exceptions=True,
    )
    logger.info("CATE stopped. Results: %s", results)


if __name__ == "__main__":
    _run_cli()
