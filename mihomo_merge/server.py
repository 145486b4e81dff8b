"""
HTTP API over the same on-disk state as the command line

    python -m mihomo_merge.server
"""

import logging
import os
import uuid
from typing import Optional

import requests
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel

from .errors import MergeError, StructuralError
from .fetch import load_subscription, make_session
from .interpreter import ParseOptions
from .model import ClashConfig
from .pipeline import load_document, load_sources, run_generation
from .rules import (
    DEFAULT_DEV_RULE_VIA,
    CustomRule,
    build_dev_rules,
    custom_rule_lines,
    prepend_rules,
    remove_custom_rules,
    resolve_dev_rules_via,
)
from .storage import (
    AppPaths,
    Subscription,
    ensure_default_template,
    load_app_config,
    load_subscription_list,
    save_app_config,
    save_subscription_list,
)
from .tweaks import ensure_cluster_dns_bypass, ensure_route_excludes

logger = logging.getLogger(__name__)

app = FastAPI(title="Mihomo Config Merger")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_paths() -> AppPaths:
    paths = AppPaths.from_env()
    paths.ensure_runtime_dirs()
    return paths


def get_session() -> requests.Session:
    return make_session()


# ==================== Models ====================

class AddSubscription(BaseModel):
    name: str
    url: Optional[str] = None
    path: Optional[str] = None


class RefreshOptions(BaseModel):
    allow_base64: bool = False


class DocumentContent(BaseModel):
    content: str


class AddCustomRule(BaseModel):
    domain: str
    via: str
    kind: str = 'suffix'


class RemoveCustomRule(BaseModel):
    domain: str
    via: Optional[str] = None


class GenerateOptions(BaseModel):
    allow_base64: bool = False
    dev_rules: bool = True
    dev_rules_via: str = DEFAULT_DEV_RULE_VIA


# ==================== Subscription API ====================

@app.get("/api/subscriptions")
def list_subscriptions(paths: AppPaths = Depends(get_paths)):
    subs = load_subscription_list(paths.subscriptions_file)
    return {"subscriptions": [s.to_dict() for s in subs.items]}


@app.post("/api/subscriptions")
def add_subscription(data: AddSubscription, paths: AppPaths = Depends(get_paths)):
    if bool(data.url) == bool(data.path):
        raise HTTPException(status_code=400, detail="Provide exactly one of url or path")
    subs = load_subscription_list(paths.subscriptions_file)
    if any((data.url and s.url == data.url) or (data.path and s.path == data.path) for s in subs.items):
        raise HTTPException(status_code=400, detail="Subscription already exists")
    new_sub = Subscription(id=f"sub_{uuid.uuid4().hex[:12]}", name=data.name, url=data.url, path=data.path)
    subs.items.append(new_sub)
    save_subscription_list(paths.subscriptions_file, subs)
    return {"status": "success", "subscription": new_sub.to_dict()}


@app.put("/api/subscriptions/{sub_id}/toggle")
def toggle_subscription(sub_id: str, paths: AppPaths = Depends(get_paths)):
    subs = load_subscription_list(paths.subscriptions_file)
    sub = subs.get(sub_id)
    if sub is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    sub.enabled = not sub.enabled
    save_subscription_list(paths.subscriptions_file, subs)
    return {"status": "success", "enabled": sub.enabled}


@app.post("/api/subscriptions/{sub_id}/refresh")
def refresh_subscription(
    sub_id: str,
    data: Optional[RefreshOptions] = None,
    paths: AppPaths = Depends(get_paths),
    session: requests.Session = Depends(get_session),
):
    subs = load_subscription_list(paths.subscriptions_file)
    sub = subs.get(sub_id)
    if sub is None:
        raise HTTPException(status_code=404, detail="Subscription not found")
    options = ParseOptions(allow_base64=data.allow_base64 if data else False)
    # Refreshing is explicit, so a disabled source is loaded anyway
    enabled, sub.enabled = sub.enabled, True
    try:
        config = load_subscription(sub, session, paths, options)
    except MergeError as e:
        logger.warning("refresh of subscription %s failed: %s", sub_id, e)
        raise HTTPException(status_code=400, detail=f"Failed to refresh subscription: {e}")
    finally:
        sub.enabled = enabled
    save_subscription_list(paths.subscriptions_file, subs)
    return {
        "status": "success",
        "subscription": sub.to_dict(),
        "node_count": len(config.proxies),
    }


@app.delete("/api/subscriptions/{sub_id}")
def delete_subscription(sub_id: str, paths: AppPaths = Depends(get_paths)):
    subs = load_subscription_list(paths.subscriptions_file)
    before = len(subs.items)
    subs.items = [s for s in subs.items if s.id != sub_id]
    if len(subs.items) == before:
        raise HTTPException(status_code=404, detail="Subscription not found")
    save_subscription_list(paths.subscriptions_file, subs)

    for cached in (paths.cache_file(sub_id), paths.cache_meta_file(sub_id)):
        if cached.exists():
            cached.unlink()
    return {"status": "success"}


# ==================== Template / base-config API ====================

def _validate(content: str):
    try:
        ClashConfig.from_yaml(content)
    except StructuralError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/api/template")
def get_template(paths: AppPaths = Depends(get_paths)):
    target = ensure_default_template(paths)
    return {"content": target.read_text(encoding='utf-8')}


@app.put("/api/template")
def save_template(data: DocumentContent, paths: AppPaths = Depends(get_paths)):
    _validate(data.content)
    paths.default_template_path.write_text(data.content, encoding='utf-8')
    return {"status": "success"}


@app.get("/api/base-config")
def get_base_config(paths: AppPaths = Depends(get_paths)):
    if not paths.base_config_path.exists():
        return {"content": ""}
    return {"content": paths.base_config_path.read_text(encoding='utf-8')}


@app.put("/api/base-config")
def save_base_config(data: DocumentContent, paths: AppPaths = Depends(get_paths)):
    if not data.content.strip():
        if paths.base_config_path.exists():
            paths.base_config_path.unlink()
        return {"status": "success", "removed": True}
    _validate(data.content)
    paths.base_config_path.write_text(data.content, encoding='utf-8')
    return {"status": "success", "removed": False}


# ==================== Custom rule API ====================

@app.get("/api/custom-rules")
def list_custom_rules(paths: AppPaths = Depends(get_paths)):
    cfg = load_app_config(paths)
    return {"rules": [r.to_dict() for r in cfg.custom_rules], "lines": custom_rule_lines(cfg.custom_rules)}


@app.post("/api/custom-rules")
def add_custom_rule(data: AddCustomRule, paths: AppPaths = Depends(get_paths)):
    try:
        rule = CustomRule(domain=data.domain, kind=data.kind, via=data.via)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    cfg = load_app_config(paths)
    added = rule not in cfg.custom_rules
    if added:
        cfg.custom_rules.append(rule)
        save_app_config(paths, cfg)
    return {"status": "success", "added": added, "rule": rule.to_dict()}


@app.delete("/api/custom-rules")
def delete_custom_rule(data: RemoveCustomRule, paths: AppPaths = Depends(get_paths)):
    cfg = load_app_config(paths)
    before = len(cfg.custom_rules)
    cfg.custom_rules = remove_custom_rules(cfg.custom_rules, data.domain, data.via)
    save_app_config(paths, cfg)
    return {"status": "success", "removed": before - len(cfg.custom_rules)}


# ==================== Generation ====================

@app.post("/api/generate")
def generate_config(
    data: Optional[GenerateOptions] = None,
    paths: AppPaths = Depends(get_paths),
    session: requests.Session = Depends(get_session),
):
    data = data or GenerateOptions()
    try:
        template = load_document(ensure_default_template(paths), 'template')
        base = load_document(paths.base_config_path, 'base config') if paths.base_config_path.exists() else None
    except StructuralError as e:
        raise HTTPException(status_code=400, detail=str(e))

    subs = load_subscription_list(paths.subscriptions_file)
    report = load_sources(subs.items, session, paths, ParseOptions(allow_base64=data.allow_base64))
    save_subscription_list(paths.subscriptions_file, subs)

    merged = run_generation(template, report, base).config
    if data.dev_rules:
        via = resolve_dev_rules_via(data.dev_rules_via, DEFAULT_DEV_RULE_VIA, merged)
        prepend_rules(merged, build_dev_rules(via))
    cfg = load_app_config(paths)
    if cfg.custom_rules:
        prepend_rules(merged, custom_rule_lines(cfg.custom_rules))
    ensure_cluster_dns_bypass(merged)
    ensure_route_excludes(merged)

    paths.output_config_path.parent.mkdir(parents=True, exist_ok=True)
    paths.output_config_path.write_text(merged.to_yaml(), encoding='utf-8')
    return {
        "status": "success",
        "output_file": str(paths.output_config_path),
        "proxies": len(merged.proxies),
        "proxy_groups": len(merged.proxy_groups),
        "rules": len(merged.rules),
        "loaded": report.loaded,
        "skipped": [{"id": sub_id, "error": error} for sub_id, error in report.skipped],
    }


def _load_output(paths: AppPaths) -> str:
    if not paths.output_config_path.exists():
        raise HTTPException(status_code=404, detail="Config not generated yet")
    return paths.output_config_path.read_text(encoding='utf-8')


@app.get("/api/names")
def get_names(paths: AppPaths = Depends(get_paths)):
    config = ClashConfig.from_yaml(_load_output(paths))
    return {"proxies": config.proxy_names(), "proxy_groups": config.proxy_group_names()}


@app.get("/sub")
def get_subscription(paths: AppPaths = Depends(get_paths)):
    return PlainTextResponse(_load_output(paths), media_type='text/yaml; charset=utf-8')


if __name__ == "__main__":
    import uvicorn
    port = int(os.environ.get('PORT', 8666))
    uvicorn.run(app, host="0.0.0.0", port=port)
