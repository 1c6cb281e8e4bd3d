from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

# Allow running this script from repo root (or anywhere) without installing the package.
_API_ROOT = Path(__file__).resolve().parents[1]  # .../apps/api
if str(_API_ROOT) not in sys.path:
    sys.path.insert(0, str(_API_ROOT))

from chapter_guard_api.llm import LLMError, generate_text, resolve_llm_config
from chapter_guard_api.pipeline.prompts import CONTINUATION_FORMAT
from chapter_guard_api.pipeline.structured_output import Malformed, parse_continuation
from chapter_guard_api.util import normalize_ai_output


async def _run(provider: str, model: str | None, max_tokens: int) -> int:
    settings = {
        "llm": {
            "provider": provider,
            "max_tokens": max_tokens,
            "response_mode": "fast",
        }
    }
    cfg = resolve_llm_config(settings, model=model, temperature=0.2)
    print(f"[smoke] provider={cfg.provider} model={cfg.model} base_url={cfg.base_url}")

    text = await generate_text(
        system_prompt="Sos un editor literario. Respeta el formato pedido.",
        user_prompt=(
            "Escribi UNA oracion breve que continue: 'Ana abrio la puerta del faro.'\n\n" + CONTINUATION_FORMAT
        ),
        cfg=cfg,
    )
    t = normalize_ai_output(text)
    print(f"[smoke] output_len={len(t)} head={t[:80]!r}")

    parsed = parse_continuation(t)
    if isinstance(parsed, Malformed):
        print("[smoke] reply did not follow the ESTADO/RESUMEN/TEXTO format")
        return 3
    print(f"[smoke] status={parsed.status} summary={parsed.summary[:60]!r}")
    return 0


def main() -> int:
    ap = argparse.ArgumentParser()
    ap.add_argument("--provider", default="ollama", choices=["ollama", "openai"])
    ap.add_argument("--model", default=None)
    ap.add_argument("--max-tokens", type=int, default=160)
    args = ap.parse_args()

    try:
        return asyncio.run(_run(args.provider, args.model, args.max_tokens))
    except LLMError as e:
        print(f"[smoke] LLMError: {e}")
        return 2
    except Exception as e:
        print(f"[smoke] Error: {type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
