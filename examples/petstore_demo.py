"""Demo script running the Petstore workflows against an in-memory API.

Run it from the repository root:

    python examples/petstore_demo.py
"""

import json
from pathlib import Path

import httpx

from arazzo_engine import Config, load_document, run_workflows
from arazzo_engine.workflows import HttpxStepExecutor, StepResult, StepStatus

HERE = Path(__file__).parent
PETS: dict[int, dict] = {}


def petstore(request: httpx.Request) -> httpx.Response:
    """A tiny Petstore; a new pet becomes readable on the second lookup."""
    if request.url.path == "/api/login":
        username = json.loads(request.content)["username"]
        return httpx.Response(200, json={"token": f"token-{username}"})
    if request.url.path == "/api/pets" and request.method == "POST":
        pet = {"id": len(PETS) + 1, **json.loads(request.content), "indexed": False}
        PETS[pet["id"]] = pet
        return httpx.Response(201, json=pet)
    pet = PETS.get(int(request.url.path.rsplit("/", 1)[-1]))
    if pet is None or not pet["indexed"]:
        if pet is not None:
            pet["indexed"] = True
        return httpx.Response(404, json={"error": "not found"}, headers={"Retry-After": "0"})
    return httpx.Response(200, json=pet)


def print_step(result: StepResult) -> None:
    print(f"  {result.workflow_id}/{result.step_id}: {result.status.value} ({result.status_code})")


def main() -> None:
    print("=" * 60)
    print("Arazzo Petstore Demo")
    print("=" * 60)

    document = load_document(HERE / "petstore.arazzo.yaml")
    results = run_workflows(
        document,
        {"username": "demo", "petName": "Rex", "tag": "dog"},
        step_executor_factory=HttpxStepExecutor.factory(Config(), transport=httpx.MockTransport(petstore)),
        on_step_complete=print_step,
    )

    for result in results:
        marker = "✅" if result.status == StepStatus.PASSED else "❌"
        print(f"\n{marker} {result.workflow_id}: {result.status.value}")
        for name, value in result.outputs.items():
            print(f"   {name} = {value}")
        if result.error_message:
            print(f"   {result.error_message}")


if __name__ == "__main__":
    main()
