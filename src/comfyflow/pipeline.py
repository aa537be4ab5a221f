from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Union

import httpx

from .clients.comfy_client import AssetReference, ComfyClient
from .config import ServerConfig
from .graph import (
    GraphNode,
    WorkflowGraph,
    locate_by_id,
    locate_by_kind,
    locate_pair_by_kind,
    parse_workflow,
    set_field,
    sweep_fields,
)
from .inputs import InputRecord, InputResolver, InputSource, ResolvedInput, SourceKind, record_index_for_role
from .logging import get_logger
from .outputs import OutputArtifact, OutputResolver
from .polling import JobPoller, JobStatus
from .profiles import JobParams, PipelineProfile
from .result import ResultRecord, package_result

EventCallback = Callable[[Dict[str, Any]], None]


@dataclass(frozen=True)
class PipelineResult:
    job_id: str
    record: ResultRecord
    artifact: OutputArtifact
    assets: List[AssetReference]
    graph: WorkflowGraph


class RenderPipeline:
    """Run one workflow invocation against a ComfyUI server.

    parse -> probe -> resolve inputs -> upload -> patch -> submit -> poll
    -> fetch output -> package. Every stage raises its own `ComfyError`
    subclass; nothing is retried and uploaded assets are not cleaned up
    when a later stage fails.
    """

    def __init__(
        self,
        config: ServerConfig,
        profile: PipelineProfile,
        *,
        on_event: Optional[EventCallback] = None,
        sleep: Callable[[float], None] = time.sleep,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.cfg = config
        self.profile = profile
        self.log = get_logger()
        self.on_event = on_event
        self.sleep = sleep
        self.transport = transport

    def _emit(self, event: Dict[str, Any]) -> None:
        if self.on_event:
            try:
                self.on_event(event)
            except Exception as e:
                # Don't break the pipeline if the caller's handler errors.
                self.log.warning(f"[events] handler failed on {event.get('type')}: {e}")

    def _tag(self) -> str:
        return f"[{self.profile.label}]"

    def run(
        self,
        params: Union[JobParams, Mapping[str, Any]],
        *,
        sources: Sequence[InputSource] = (),
        records: Sequence[InputRecord] = (),
    ) -> PipelineResult:
        profile = self.profile
        if not isinstance(params, profile.params_model):
            params = profile.params_model.model_validate(params)
        if len(sources) != profile.arity:
            raise ValueError(f"{profile.name} pipeline expects {profile.arity} input(s), got {len(sources)}")
        self.cfg.validate()

        def step_start(name: str, meta: Optional[Dict[str, Any]] = None) -> None:
            self.log.info(f"{self._tag()} {name} …")
            self._emit({"type": "step.start", "step": name, "meta": meta or {}})

        def step_end(name: str, outputs: Optional[Dict[str, Any]] = None) -> None:
            self._emit({"type": "step.end", "step": name, "outputs": outputs or {}})
            self.log.debug(f"{self._tag()} {name} ✓")

        def step_progress(name: str, progress: Any) -> None:
            self._emit({"type": "step.progress", "step": name, "progress": progress})

        # -----------------------
        # Parse + locate (no network)
        # -----------------------
        step_start("prepare")
        graph = parse_workflow(params.workflow)
        targets = self._locate_targets(graph, params)
        text_node = self._locate_text_target(graph)
        step_end("prepare", {"nodes": len(graph), "targets": [n.node_id for n in targets]})

        with ComfyClient(self.cfg, transport=self.transport) as client, httpx.Client(
            timeout=self.cfg.download_timeout_s, follow_redirects=True, transport=self.transport
        ) as http:
            client.check_connection()

            # -----------------------
            # Resolve + upload inputs
            # -----------------------
            assets: List[AssetReference] = []
            if profile.input_roles:
                step_start("upload", {"inputs": profile.arity})
                resolver = InputResolver(http, records, mime_prefix=profile.input_mime_prefix)
                resolved = self._resolve_inputs(resolver, sources)
                for i, (role, item) in enumerate(zip(profile.input_roles, resolved)):
                    assets.append(client.upload_image(item.data, role.upload_filename))
                    step_progress("upload", {"completed": i + 1, "total": profile.arity})
                step_end("upload", {"assets": [a.name for a in assets]})

            # -----------------------
            # Patch
            # -----------------------
            step_start("patch")
            for node, asset in zip(targets, assets):
                set_field(node, profile.target_field, asset.name)
                self.log.info(f'{self._tag()} {node.kind} "{node.node_id}" {profile.target_field}={asset.name}')
            if text_node is not None and profile.text_target is not None:
                set_field(text_node, profile.text_target[1], params.text_value())

            values = params.sweep_values()
            for sweep in profile.sweeps:
                sweep_fields(graph, sweep.kinds, sweep.values(values), first_only=sweep.first_only)
            step_end("patch", {"targets": [n.node_id for n in targets]})

            # -----------------------
            # Submit + poll
            # -----------------------
            step_start("submit")
            job_id = client.queue_prompt(graph)
            step_end("submit", {"prompt_id": job_id})

            step_start("poll", {"prompt_id": job_id, "timeout_minutes": params.timeout_minutes})

            def _on_tick(attempt: int, total: int, status: JobStatus) -> None:
                step_progress("poll", {"attempt": attempt, "max_attempts": total, "state": status.state.value})

            poller = JobPoller(
                client.get_history,
                initial_wait_s=profile.initial_wait_s,
                poll_interval_s=profile.poll_interval_s,
                timeout_minutes=params.timeout_minutes,
                sleep=self.sleep,
                on_tick=_on_tick,
                label=profile.label,
            )
            done = poller.wait(job_id)
            step_end("poll", {"attempts": poller.attempts})

            # -----------------------
            # Output
            # -----------------------
            step_start("output")
            resolver_out = OutputResolver(
                profile.output_rules,
                profile.formats,
                profile.fallback_format,
                media_class=profile.media_class,
            )
            output = resolver_out.resolve(done.outputs, client.fetch_artifact)

        metadata: Dict[str, Any] = {"status": done.status, "promptId": job_id}
        metadata.update(params.metadata(assets, values))
        record = package_result(output.data, output.artifact.filename, output.format, metadata)
        step_end("output", {"fileName": record.file_name, "mimeType": record.mime_type, "fileSize": record.file_size})

        return PipelineResult(job_id=job_id, record=record, artifact=output.artifact, assets=assets, graph=graph)

    def _locate_targets(self, graph: WorkflowGraph, params: JobParams) -> List[GraphNode]:
        profile = self.profile
        if not profile.input_roles:
            return []

        node_ids = params.node_ids()
        if node_ids:
            nodes = [locate_by_id(graph, node_id, profile.target_kind) for node_id in node_ids]
        elif profile.arity == 2:
            nodes = list(locate_pair_by_kind(graph, profile.target_kind, require_field=profile.target_field))
        else:
            nodes = [locate_by_kind(graph, profile.target_kind)]

        for node in nodes:
            node.require_inputs()
        return nodes

    def _locate_text_target(self, graph: WorkflowGraph) -> Optional[GraphNode]:
        if self.profile.text_target is None:
            return None
        node = locate_by_kind(graph, self.profile.text_target[0])
        node.require_inputs()
        return node

    def _resolve_inputs(self, resolver: InputResolver, sources: Sequence[InputSource]) -> List[ResolvedInput]:
        resolved: List[ResolvedInput] = []
        used: Dict[int, List[str]] = {}
        for role, source in enumerate(sources):
            index = record_index_for_role(role, len(resolver.records))
            item = resolver.resolve(source, role=role, exclude=used.get(index, ()))
            if item.source_kind is SourceKind.ATTACHMENT and item.attachment_name:
                used.setdefault(index, []).append(item.attachment_name)
            self.log.info(f"{self._tag()} input {role + 1} resolved ({item.source_kind.value}, {len(item.data)} bytes)")
            resolved.append(item)
        return resolved
