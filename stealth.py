"""
stealth.py – Fingerprint masking layer for the LinkedIn Inbox Bot.

Provides:
- Per-context fingerprint profiles (hardware, network, canvas seed, screen)
- Viewport randomisation
- A JS init script hardening what phantomwright's Stealth does not cover
- Stealth + header application to a fresh context
- Security-checkpoint detection (reported, never solved)
"""

from __future__ import annotations

import json
import logging
import random
from dataclasses import dataclass

from phantomwright.stealth import Stealth

from bot_utils import element_exists, is_browser_fatal
from config import CHECKPOINT_MARKERS, LINKEDIN_HOST, LOCALE

logger = logging.getLogger("LinkedInInbox")

# ──────────────────────────────────────────────
# Viewport Randomisation
# ──────────────────────────────────────────────

COMMON_VIEWPORTS = [
    (1280, 720),
    (1280, 800),
    (1366, 768),
    (1440, 900),
    (1536, 864),
    (1600, 900),
    (1920, 1080),
]


def random_viewport(rng=random) -> dict:
    """Return a slightly jittered viewport from common resolutions."""
    base_w, base_h = rng.choice(COMMON_VIEWPORTS)
    return {
        "width": base_w + rng.randint(-16, 16),
        "height": base_h + rng.randint(-12, 12),
    }


# ──────────────────────────────────────────────
# Fingerprint Profile
# ──────────────────────────────────────────────

@dataclass(frozen=True)
class FingerprintProfile:
    """Values drawn once per browser context and kept for its lifetime."""
    hardware_concurrency: int
    device_memory: int
    canvas_seed: int
    rtt: int
    downlink: int
    screen_width: int
    screen_height: int
    languages: tuple[str, ...] = ("en-US", "en")

    @classmethod
    def generate(cls, viewport: dict, rng=random) -> "FingerprintProfile":
        return cls(
            hardware_concurrency=rng.choice([4, 6, 8, 12]),
            device_memory=rng.choice([4, 8, 16]),
            canvas_seed=rng.randint(1, 2**31),
            rtt=rng.choice([50, 75, 100]),
            downlink=rng.choice([5, 8, 10, 15]),
            # Screen is at least as large as the window
            screen_width=max(viewport["width"], 1280),
            screen_height=max(viewport["height"], 720) + rng.choice([0, 40, 80]),
        )

    @property
    def accept_language(self) -> str:
        primary, *rest = self.languages
        parts = [primary] + [f"{lang};q={0.9 - 0.1 * i:.1f}" for i, lang in enumerate(rest)]
        return ",".join(parts)


def get_fingerprint_scripts(profile: FingerprintProfile) -> str:
    """Return a JS payload that hardens the browser fingerprint
    beyond what phantomwright's Stealth covers.
    """
    return """
    // --- webdriver ---
    Object.defineProperty(navigator, 'webdriver', {
        get: () => false,
        configurable: true
    });

    // --- plugins (PluginArray-like) ---
    (function() {
        const pluginData = [
            { name: 'PDF Viewer', filename: 'internal-pdf-viewer',
              description: 'Portable Document Format',
              mimeTypes: [{ type: 'application/pdf', suffixes: 'pdf', description: 'Portable Document Format' }] },
            { name: 'Chrome PDF Viewer', filename: 'internal-pdf-viewer',
              description: 'Portable Document Format',
              mimeTypes: [{ type: 'application/x-google-chrome-pdf', suffixes: 'pdf', description: '' }] },
            { name: 'Chromium PDF Viewer', filename: 'internal-pdf-viewer',
              description: 'Portable Document Format',
              mimeTypes: [{ type: 'application/pdf', suffixes: 'pdf', description: '' }] },
        ];
        const plugins = Object.create(PluginArray.prototype);
        pluginData.forEach((p, i) => { plugins[i] = p; });
        Object.defineProperty(plugins, 'length', { get: () => pluginData.length });
        Object.defineProperty(navigator, 'plugins', {
            get: () => plugins,
            configurable: true
        });
    })();

    // --- languages ---
    Object.defineProperty(navigator, 'languages', {
        get: () => """ + json.dumps(list(profile.languages)) + """,
        configurable: true
    });

    // --- chrome runtime ---
    if (!window.chrome) {
        window.chrome = {};
    }
    if (!window.chrome.runtime) {
        window.chrome.runtime = {
            OnInstalledReason: { CHROME_UPDATE: 'chrome_update', INSTALL: 'install', SHARED_MODULE_UPDATE: 'shared_module_update', UPDATE: 'update' },
            PlatformOs: { ANDROID: 'android', CROS: 'cros', LINUX: 'linux', MAC: 'mac', OPENBSD: 'openbsd', WIN: 'win' },
            connect: function() { return { onDisconnect: { addListener: function() {} }, onMessage: { addListener: function() {} }, postMessage: function() {} }; },
            sendMessage: function() {},
            id: undefined,
        };
    }

    // --- permissions query ---
    const originalQuery = window.navigator.permissions.query;
    window.navigator.permissions.query = (parameters) => {
        if (parameters.name === 'notifications') {
            return Promise.resolve({ state: Notification.permission });
        }
        return originalQuery(parameters);
    };

    // --- connection (NetworkInformation) ---
    if (!navigator.connection) {
        Object.defineProperty(navigator, 'connection', {
            get: () => ({
                effectiveType: '4g',
                rtt: """ + str(profile.rtt) + """,
                downlink: """ + str(profile.downlink) + """,
                saveData: false,
            }),
            configurable: true
        });
    }

    // --- hardware ---
    Object.defineProperty(navigator, 'hardwareConcurrency', {
        get: () => """ + str(profile.hardware_concurrency) + """,
        configurable: true
    });
    Object.defineProperty(navigator, 'deviceMemory', {
        get: () => """ + str(profile.device_memory) + """,
        configurable: true
    });

    // --- screen ---
    Object.defineProperty(screen, 'width', { get: () => """ + str(profile.screen_width) + """ });
    Object.defineProperty(screen, 'height', { get: () => """ + str(profile.screen_height) + """ });
    Object.defineProperty(screen, 'availWidth', { get: () => """ + str(profile.screen_width) + """ });
    Object.defineProperty(screen, 'availHeight', { get: () => """ + str(profile.screen_height - 40) + """ });

    // --- canvas noise (seeded, stable within the context) ---
    (function() {
        let s = """ + str(profile.canvas_seed) + """;
        function nextRand() {
            s = (s * 1103515245 + 12345) & 0x7fffffff;
            return (s >> 16) & 0xff;
        }

        const origToDataURL = HTMLCanvasElement.prototype.toDataURL;
        HTMLCanvasElement.prototype.toDataURL = function(type) {
            if (this.width === 0 || this.height === 0) {
                return origToDataURL.apply(this, arguments);
            }
            try {
                const ctx = this.getContext('2d');
                if (ctx) {
                    const w = Math.min(this.width, 16);
                    const h = Math.min(this.height, 16);
                    const imgData = ctx.getImageData(0, 0, w, h);
                    for (let p = 0; p < w * h; p++) {
                        if (nextRand() % 10 === 0) {
                            const idx = p * 4 + (nextRand() % 3);
                            const delta = (nextRand() % 3) - 1;
                            imgData.data[idx] = Math.max(0, Math.min(255, imgData.data[idx] + delta));
                        }
                    }
                    ctx.putImageData(imgData, 0, 0);
                }
            } catch(e) {}
            return origToDataURL.apply(this, arguments);
        };

        const origToBlob = HTMLCanvasElement.prototype.toBlob;
        HTMLCanvasElement.prototype.toBlob = function(callback, type, quality) {
            try { this.toDataURL(type); } catch(e) {}
            return origToBlob.apply(this, arguments);
        };
    })();

    // --- WebGL vendor/renderer (only when empty) ---
    (function() {
        function patch(proto) {
            const getParam = proto.getParameter;
            proto.getParameter = function(param) {
                const val = getParam.apply(this, arguments);
                if (param === 37445 && (!val || val === '')) return 'Google Inc.';
                if (param === 37446 && (!val || val === '')) return 'ANGLE (Google, Vulkan 1.3.0, OpenGL ES 3.2)';
                return val;
            };
        }
        patch(WebGLRenderingContext.prototype);
        if (typeof WebGL2RenderingContext !== 'undefined') {
            patch(WebGL2RenderingContext.prototype);
        }
    })();

    // --- audio oscillator noise ---
    (function() {
        if (typeof AnalyserNode === 'undefined') return;
        const origGetFloat = AnalyserNode.prototype.getFloatFrequencyData;
        AnalyserNode.prototype.getFloatFrequencyData = function(array) {
            origGetFloat.apply(this, arguments);
            for (let i = 0; i < array.length; i += 50) {
                array[i] += (Math.random() - 0.5) * 0.0001;
            }
        };
    })();

    // --- performance.now jitter ---
    (function() {
        const origNow = performance.now.bind(performance);
        performance.now = function() {
            return origNow() + Math.random() * 0.1;
        };
    })();

    // --- track mouse position (non-enumerable) ---
    Object.defineProperty(window, '__mPos', {
        value: { x: 0, y: 0 },
        writable: true,
        enumerable: false,
        configurable: false
    });
    document.addEventListener('mousemove', (e) => {
        window.__mPos.x = e.clientX;
        window.__mPos.y = e.clientY;
    }, { passive: true });
    """


# ──────────────────────────────────────────────
# Applying the Layers
# ──────────────────────────────────────────────

def build_stealth():
    """Configure phantomwright's Stealth evasions."""
    primary = LOCALE or "en-US"
    return Stealth(
        navigator_languages_override=(primary, primary.split("-")[0]),
        media_codecs=False,
        navigator_user_agent=True,
        navigator_platform=True,
        sec_ch_ua=True,
    )


def apply_stealth_layers(context, page, profile: FingerprintProfile, stealth=None) -> None:
    """Apply Stealth evasions, the fingerprint init script, and the
    Accept-Language header.  Called once per context.
    """
    if stealth is None:
        stealth = build_stealth()

    for target, label in ((context, "context"), (page, "page")):
        try:
            stealth.apply_stealth_sync(target)
        except Exception as exc:
            if is_browser_fatal(exc):
                raise
            logger.debug("Stealth apply on %s failed: %s", label, exc)

    try:
        context.add_init_script(get_fingerprint_scripts(profile))
    except Exception as exc:
        if is_browser_fatal(exc):
            raise
        logger.debug("Init fingerprint script failed: %s", exc)

    try:
        context.set_extra_http_headers({"Accept-Language": profile.accept_language})
    except Exception as exc:
        if is_browser_fatal(exc):
            raise
        logger.debug("Setting extra headers failed: %s", exc)


# ──────────────────────────────────────────────
# Security Checkpoint Detection
# ──────────────────────────────────────────────

CHECKPOINT_SELECTORS = [
    'iframe[src*="captcha"]',
    "#captcha-internal",
    'form[action*="checkpoint"]',
    'input[name="pin"]',
]


def detect_checkpoint(page, check_dom: bool = True) -> str | None:
    """Return a description if *page* shows a LinkedIn security checkpoint
    or is off LinkedIn entirely, else ``None``.
    """
    url = (page.url or "").lower()
    if LINKEDIN_HOST not in url:
        return f"off_site:{url}"
    for marker in CHECKPOINT_MARKERS:
        if marker in url:
            return f"checkpoint_url:{marker}"
    if not check_dom:
        return None
    for sel in CHECKPOINT_SELECTORS:
        if element_exists(page, sel, timeout=300):
            logger.warning("Checkpoint element present: %s", sel)
            return f"checkpoint_element:{sel}"
    return None
