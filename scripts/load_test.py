"""Drive the prepare / chunk / finalize / download cycle against a running service.

Chunks of each file are sent shuffled and in parallel, and every download is
compared byte for byte with what was uploaded.
"""

import argparse
import random
import time
from concurrent.futures import ThreadPoolExecutor

import httpx


def _upload_and_verify(base_url: str, payload: bytes, chunk_size: int, workers: int) -> float:
    started = time.perf_counter()
    with httpx.Client(base_url=base_url, timeout=60.0) as client:
        prepare = client.post("/v1/files/prepare", json={"name": "load.bin", "content_type": "application/octet-stream"})
        prepare.raise_for_status()
        upload_id = prepare.json()["id"]

        pieces = [(index, payload[offset : offset + chunk_size]) for index, offset in enumerate(range(0, len(payload), chunk_size))]
        random.shuffle(pieces)

        def _send(piece: tuple[int, bytes]) -> None:
            index, data = piece
            client.put(f"/v1/files/{upload_id}/chunks/{index}", content=data).raise_for_status()

        with ThreadPoolExecutor(max_workers=workers) as pool:
            list(pool.map(_send, pieces))

        client.post(f"/v1/files/{upload_id}/finalize").raise_for_status()
        download = client.get(f"/v1/files/{upload_id}/download")
        download.raise_for_status()
        if download.content != payload:
            raise RuntimeError(f"reassembled bytes differ for upload {upload_id}")
    return time.perf_counter() - started


def main() -> int:
    parser = argparse.ArgumentParser(description="Load test for chunk-assembly-service.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000")
    parser.add_argument("--files", type=int, default=5)
    parser.add_argument("--file-size-bytes", type=int, default=4 * 1024 * 1024)
    parser.add_argument("--chunk-size-bytes", type=int, default=256 * 1024)
    parser.add_argument("--chunk-workers", type=int, default=8)
    args = parser.parse_args()

    payload = random.randbytes(args.file_size_bytes)
    with ThreadPoolExecutor(max_workers=max(1, args.files)) as pool:
        durations = list(
            pool.map(
                lambda _: _upload_and_verify(args.base_url, payload, args.chunk_size_bytes, args.chunk_workers),
                range(args.files),
            )
        )

    total_mb = args.files * args.file_size_bytes / (1024 * 1024)
    slowest = max(durations, default=0.0)
    print(f"{args.files} files verified, {total_mb:.1f} MiB, slowest {slowest:.2f}s")
    if slowest > 0:
        print(f"throughput ~{total_mb / slowest:.2f} MiB/s")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
