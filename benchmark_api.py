import argparse
import asyncio
import base64
import json
import statistics
import time
from collections import Counter
from pathlib import Path

import httpx

FORMATS = {".jpg": "JPEG", ".jpeg": "JPEG", ".png": "PNG", ".webp": "WEBP", ".tif": "TIFF", ".tiff": "TIFF"}


def load_payloads(image_dir: Path):
    payloads = []
    for img_path in sorted(image_dir.glob("*")):
        fmt = FORMATS.get(img_path.suffix.lower())
        if fmt is None:
            continue
        with open(img_path, "rb") as f:
            encoded = base64.b64encode(f.read()).decode("utf-8")
        payloads.append((img_path.name, {"image_base64": encoded, "format": fmt}))
    return payloads


async def send_one(client: httpx.AsyncClient, api_url: str, name: str, payload: dict, client_id: str):
    start = time.perf_counter()
    try:
        response = await client.post(api_url, json=payload, headers={"X-Client-ID": client_id})
    except httpx.HTTPError as e:
        return {"filename": name, "outcome": "TRANSPORT_ERROR", "error": str(e), "latency_ms": None}

    latency_ms = (time.perf_counter() - start) * 1000
    data = response.json()
    if response.status_code == 200:
        return {
            "filename": name,
            "outcome": data["classification"],
            "confidence": data["confidence_score"],
            "fallback": data["processing_metadata"]["fallback_triggered"],
            "latency_ms": latency_ms,
        }
    return {
        "filename": name,
        "outcome": data.get("error_code", f"HTTP_{response.status_code}"),
        "error": data.get("error"),
        "latency_ms": latency_ms,
    }


async def run_benchmark(api_url: str, image_dir: Path, requests_total: int, client_id: str):
    payloads = load_payloads(image_dir)
    if not payloads:
        print(f"No JPEG/PNG/WebP/TIFF images found in {image_dir}")
        return []

    print(f"Submitting {requests_total} concurrent requests ({len(payloads)} distinct images)...")
    jobs = [payloads[i % len(payloads)] for i in range(requests_total)]

    started = time.perf_counter()
    async with httpx.AsyncClient(timeout=60.0) as client:
        results = await asyncio.gather(*(
            send_one(client, api_url, name, payload, client_id) for name, payload in jobs
        ))
    wall_s = time.perf_counter() - started

    outcomes = Counter(r["outcome"] for r in results)
    latencies = sorted(r["latency_ms"] for r in results if r["latency_ms"] is not None)

    print("\n" + "=" * 60)
    print("BENCHMARK SUMMARY")
    print("=" * 60)
    print(f"Requests: {len(results)} in {wall_s:.2f}s ({len(results) / wall_s:.1f} req/s)")
    for outcome, count in outcomes.most_common():
        print(f"  {outcome:<24} {count}")
    if latencies:
        p95 = latencies[min(len(latencies) - 1, int(len(latencies) * 0.95))]
        print(f"Latency ms: median {statistics.median(latencies):.0f} | p95 {p95:.0f} | max {latencies[-1]:.0f}")
    fallbacks = sum(1 for r in results if r.get("fallback"))
    print(f"Fallback triggered: {fallbacks}")

    with open("benchmark_results.json", "w") as f:
        json.dump(results, f, indent=2)
    print("Detailed results saved to benchmark_results.json")
    return results


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Concurrent load benchmark for POST /api/v1/analyze")
    parser.add_argument("--url", default="http://localhost:8000/api/v1/analyze")
    parser.add_argument("--images", default="./sample_images")
    parser.add_argument("--requests", type=int, default=100)
    parser.add_argument("--client-id", default="benchmark")
    args = parser.parse_args()

    asyncio.run(run_benchmark(args.url, Path(args.images), args.requests, args.client_id))
