from __future__ import annotations

AGENT_SCRIPT_VERSION = "3"
AGENT_GLOBAL = "__composeRelayAgent"
OVERLAY_ID = "compose-relay-fallback-overlay"


# NOTE: This script is self-contained and idempotent (re-installing the same
# version is a no-op; a newer version replaces the handler but keeps the
# attachment state so a reinstall never re-opens a completed tab).
#
# It exposes `globalThis.__composeRelayAgent` with:
# - handle(message): async request/response entrypoint (see MESSAGE TYPES)
# - fileInput(): resolver used by CDP DOM.setFileInputFiles
# - state: { inProgress, completed, pendingPayload }
#
# MESSAGE TYPES
# - readiness-ping                     -> {acknowledged, locationInfo, timestamp}
# - attach-payload {payloadRef}        -> arms state (completed/busy gates)
# - attach-step {step, ...}            -> reveal-input | notify-input | locate | paste | hidden-input
# - attach-release {completed}         -> clears inProgress, optionally latches completed
# - attach-state                       -> {inProgress, completed, hasPendingData}
# - fallback-show/-hide/-state         -> manual overlay
# - fallback-watch {binding, windowMs} -> MutationObserver calling a CDP binding
AGENT_SCRIPT_SOURCE = r"""
(() => {
  const VERSION = "3";
  const GLOBAL = "__composeRelayAgent";
  const OVERLAY_ID = "compose-relay-fallback-overlay";
  const g = globalThis;

  if (g[GLOBAL] && g[GLOBAL].__version === VERSION) {
    return { ok: true, already: true, version: VERSION };
  }

  const prev = g[GLOBAL] || null;
  const state = prev && prev.state
    ? prev.state
    : { inProgress: false, completed: false, pendingPayload: null };

  const ATTACH_BUTTON_SELECTORS = [
    '[data-testid="attachments"]',
    '[aria-label*="Media"]',
    'button[aria-label*="Add photos"]',
    'button[aria-label*="Add media"]',
    '[data-testid="toolBarAttachments"]',
  ];

  const FILE_INPUT_SELECTORS = [
    'input[type="file"][accept*="image"]',
    'input[data-testid*="fileInput"]',
    'input[data-testid*="attachments"]',
    'input[type="file"]',
  ];

  const COMPOSER_SELECTORS = [
    '[data-testid="tweetTextarea_0"]',
    '[contenteditable="true"]',
    'textarea[placeholder*="happening"]',
  ];

  function sleep(ms) {
    return new Promise((resolve) => setTimeout(resolve, ms));
  }

  function first(selectors) {
    for (const sel of selectors) {
      try {
        const el = document.querySelector(sel);
        if (el) return el;
      } catch (_e) {
        // invalid selector on this engine
      }
    }
    return null;
  }

  function fileInput() {
    return first(FILE_INPUT_SELECTORS);
  }

  function composer() {
    return first(COMPOSER_SELECTORS);
  }

  function dataUrlToFile(dataUrl, filename) {
    const comma = dataUrl.indexOf(",");
    const head = dataUrl.slice(0, comma);
    const mime = (head.match(/^data:([^;]+)/) || [])[1] || "image/png";
    const bin = atob(dataUrl.slice(comma + 1));
    const bytes = new Uint8Array(bin.length);
    for (let i = 0; i < bin.length; i++) bytes[i] = bin.charCodeAt(i);
    let name = filename;
    if (!name) {
      const ext = mime.includes("jpeg") ? "jpg" : mime.includes("webp") ? "webp" : mime.includes("gif") ? "gif" : "png";
      name = `compose-relay-image.${ext}`;
    }
    return new File([bytes], name, { type: mime });
  }

  function pendingFile() {
    const p = state.pendingPayload;
    if (!p || !p.dataUrl) return null;
    return dataUrlToFile(p.dataUrl, p.filename);
  }

  function fileList(file) {
    const dt = new DataTransfer();
    dt.items.add(file);
    return dt;
  }

  function centerOf(el) {
    const r = el.getBoundingClientRect();
    if (!r || r.width <= 0 || r.height <= 0) return null;
    return { x: r.left + r.width / 2, y: r.top + r.height / 2, w: r.width, h: r.height };
  }

  function poke(input) {
    input.dispatchEvent(new Event("input", { bubbles: true }));
    input.dispatchEvent(new Event("change", { bubbles: true }));
    const near = [input.closest("form"), input.parentElement, composer()].filter(Boolean);
    for (const el of near) {
      try {
        if (typeof el.focus === "function") el.focus();
        if (el !== input.parentElement && typeof el.click === "function") el.click();
      } catch (_e) {
        // best-effort
      }
    }
  }

  const steps = {
    async "reveal-input"() {
      const button = first(ATTACH_BUTTON_SELECTORS);
      if (button) {
        button.click();
        await sleep(200);
      }
      return { ok: !!fileInput(), clicked: !!button };
    },

    async "notify-input"() {
      const input = fileInput();
      if (!input) return { ok: false, error: "file input not found" };
      if (!input.files || input.files.length === 0) {
        return { ok: false, error: "file input is empty" };
      }
      poke(input);
      return { ok: true, files: input.files.length };
    },

    async locate(msg) {
      const sel = String(msg.selector || "");
      if (sel === ":document") {
        return { ok: true, x: g.innerWidth / 2, y: g.innerHeight / 2 };
      }
      const el = first([sel]);
      if (!el) return { ok: false, error: `no element for ${sel}` };
      if (typeof el.scrollIntoView === "function") el.scrollIntoView({ block: "center" });
      const c = centerOf(el);
      if (!c) return { ok: false, error: `element ${sel} has no box` };
      return { ok: true, x: c.x, y: c.y };
    },

    async paste(msg) {
      const file = pendingFile();
      if (!file) return { ok: false, error: "no pending payload" };
      const which = String(msg.target || "");
      let target = null;
      if (which === "composer") target = composer();
      else if (which === "textbox") target = first(['[role="textbox"]']);
      else if (which === "active") target = document.activeElement;
      else if (which === "body") target = document.body;
      if (!target) return { ok: false, error: `paste target ${which} not found` };
      if (typeof target.focus === "function") target.focus();
      const ev = new ClipboardEvent("paste", {
        bubbles: true,
        cancelable: true,
        clipboardData: fileList(file),
      });
      target.dispatchEvent(ev);
      return { ok: true, target: which, tag: target.tagName };
    },

    async "hidden-input"() {
      const file = pendingFile();
      if (!file) return { ok: false, error: "no pending payload" };
      const hidden = document.createElement("input");
      hidden.type = "file";
      hidden.accept = "image/*";
      hidden.style.cssText = "position:fixed;left:-9999px;top:-9999px;opacity:0;";
      document.body.appendChild(hidden);
      try {
        hidden.files = fileList(file).files;
        hidden.dispatchEvent(new Event("change", { bubbles: true }));
        const real = fileInput();
        if (real && real !== hidden) {
          real.files = hidden.files;
          real.dispatchEvent(new Event("change", { bubbles: true }));
        }
        return { ok: true, propagated: !!real };
      } finally {
        hidden.remove();
      }
    },
  };

  let overlayTimer = null;
  let watch = null;

  function removeOverlay() {
    const existing = document.getElementById(OVERLAY_ID);
    if (existing) existing.remove();
    if (overlayTimer) {
      clearTimeout(overlayTimer);
      overlayTimer = null;
    }
    return !!existing;
  }

  function onEscape(ev) {
    if (ev.key === "Escape") {
      removeOverlay();
      document.removeEventListener("keydown", onEscape, true);
    }
  }

  function showOverlay(dataUrl, filename, ttlMs) {
    removeOverlay();
    const wrap = document.createElement("div");
    wrap.id = OVERLAY_ID;
    wrap.setAttribute("role", "dialog");
    wrap.style.cssText = [
      "position:fixed", "top:20px", "right:20px", "z-index:2147483647",
      "background:linear-gradient(135deg,#1d4ed8,#06b6d4)", "color:#fff",
      "padding:16px", "border-radius:12px", "max-width:300px",
      "box-shadow:0 10px 25px rgba(0,0,0,.3)",
      "font-family:system-ui,-apple-system,sans-serif", "font-size:14px",
    ].join(";");

    const title = document.createElement("div");
    title.style.cssText = "font-weight:bold;margin-bottom:8px;";
    title.textContent = "Image could not be attached automatically";
    const hint = document.createElement("div");
    hint.style.cssText = "font-size:12px;opacity:.9;margin-bottom:12px;";
    hint.textContent = "Download the image and drag it into the composer.";

    const row = document.createElement("div");
    row.style.cssText = "display:flex;gap:8px;flex-wrap:wrap;";
    const btnStyle = "background:rgba(255,255,255,.2);color:#fff;border:none;border-radius:6px;padding:8px 12px;cursor:pointer;font-size:12px;text-decoration:none;";

    const open = document.createElement("button");
    open.dataset.action = "open";
    open.textContent = "Open in new tab";
    open.style.cssText = btnStyle;
    open.onclick = () => {
      g.open(dataUrl, "_blank");
      removeOverlay();
    };

    const download = document.createElement("a");
    download.dataset.action = "download";
    download.textContent = "Download";
    download.href = dataUrl;
    download.download = filename || "compose-relay-image.png";
    download.style.cssText = btnStyle;

    const close = document.createElement("button");
    close.dataset.action = "close";
    close.textContent = "×";
    close.setAttribute("aria-label", "Close");
    close.style.cssText = "position:absolute;top:6px;right:8px;background:none;border:none;color:rgba(255,255,255,.7);cursor:pointer;font-size:16px;";
    close.onclick = () => removeOverlay();

    row.append(open, download);
    wrap.append(title, hint, row, close);
    (document.body || document.documentElement).appendChild(wrap);
    document.addEventListener("keydown", onEscape, true);

    overlayTimer = setTimeout(() => {
      if (wrap.parentNode) wrap.remove();
      overlayTimer = null;
    }, Math.max(1000, Number(ttlMs) || 20000));
    return true;
  }

  function stopWatch() {
    if (!watch) return false;
    try { watch.observer.disconnect(); } catch (_e) {}
    clearTimeout(watch.expiry);
    watch = null;
    return true;
  }

  function startWatch(binding, windowMs, throttleMs) {
    stopWatch();
    const notify = g[binding];
    if (typeof notify !== "function") return { ok: false, error: `binding ${binding} missing` };
    let last = 0;
    const observer = new MutationObserver(() => {
      const t = Date.now();
      if (t - last < throttleMs) return;
      last = t;
      try { notify(JSON.stringify({ t })); } catch (_e) {}
    });
    observer.observe(document.documentElement, { childList: true, subtree: true });
    const expiry = setTimeout(stopWatch, windowMs);
    watch = { observer, expiry };
    return { ok: true, watching: true, windowMs };
  }

  function snapshot() {
    return {
      inProgress: !!state.inProgress,
      completed: !!state.completed,
      hasPendingData: !!(state.pendingPayload && state.pendingPayload.dataUrl),
    };
  }

  const handlers = {
    async "readiness-ping"() {
      return {
        acknowledged: true,
        locationInfo: { href: location.href, readyState: document.readyState },
        timestamp: Date.now(),
      };
    },

    async "attach-payload"(msg) {
      if (state.completed) return { ok: true, alreadyCompleted: true };
      if (state.inProgress) return { ok: false, busy: true, error: "attachment already in progress" };
      const ref = msg.payloadRef;
      if (typeof ref !== "string" || !ref.startsWith("data:image/")) {
        return { ok: false, error: "malformed payload: expected data:image/ URL" };
      }
      state.inProgress = true;
      state.pendingPayload = { dataUrl: ref, filename: msg.filename || null };
      return { ok: true };
    },

    async "attach-step"(msg) {
      const fn = steps[msg.step];
      if (!fn) return { ok: false, error: `unknown step ${msg.step}` };
      if (state.completed) return { ok: true, alreadyCompleted: true };
      try {
        return await fn(msg);
      } catch (e) {
        return { ok: false, error: String((e && e.message) || e) };
      }
    },

    async "attach-release"(msg) {
      if (msg.completed) state.completed = true;
      state.inProgress = false;
      return { ok: true, ...snapshot() };
    },

    async "attach-state"() {
      return { ok: true, ...snapshot() };
    },

    async "fallback-show"(msg) {
      const dataUrl = msg.payloadRef || (state.pendingPayload && state.pendingPayload.dataUrl);
      if (!dataUrl) return { ok: false, error: "no payload to offer" };
      showOverlay(dataUrl, msg.filename, msg.ttlMs);
      return { ok: true, shown: true };
    },

    async "fallback-hide"() {
      stopWatch();
      return { ok: true, removed: removeOverlay() };
    },

    async "fallback-state"() {
      return { ok: true, active: !!document.getElementById(OVERLAY_ID), watching: !!watch };
    },

    async "fallback-watch"(msg) {
      if (msg.stop) return { ok: true, stopped: stopWatch() };
      const windowMs = Math.max(1000, Number(msg.windowMs) || 15000);
      const throttleMs = Math.max(50, Number(msg.throttleMs) || 250);
      return startWatch(String(msg.binding || ""), windowMs, throttleMs);
    },
  };

  async function handle(message) {
    const msg = message && typeof message === "object" ? message : {};
    const fn = handlers[msg.type];
    if (!fn) return { ok: false, error: `unknown message type ${msg.type}` };
    return await fn(msg);
  }

  g[GLOBAL] = { __version: VERSION, state, handle, fileInput };
  return { ok: true, installed: true, version: VERSION, replaced: !!prev };
})()
"""


def agent_call_expression(message_json: str) -> str:
    """Expression that routes one JSON message to the installed agent."""
    return (
        "(async () => {"
        f"const a = globalThis.{AGENT_GLOBAL};"
        "if (!a || typeof a.handle !== 'function') return {__noAgent: true};"
        f"return await a.handle({message_json});"
        "})()"
    )


FILE_INPUT_EXPRESSION = (
    f"(globalThis.{AGENT_GLOBAL} && globalThis.{AGENT_GLOBAL}.fileInput()) || "
    "document.querySelector('input[type=\"file\"]')"
)


__all__ = [
    "AGENT_GLOBAL",
    "AGENT_SCRIPT_SOURCE",
    "AGENT_SCRIPT_VERSION",
    "FILE_INPUT_EXPRESSION",
    "OVERLAY_ID",
    "agent_call_expression",
]
