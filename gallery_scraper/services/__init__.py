# Services package
from .worker_pool import BrowserPool, PageHandle, PlaywrightLauncher, PoolStats
from .connector import TemplateConnector, parse_template_payload
from .homepage import HomepageDetection, pick_homepage, detect_homepage
from .screenshot import ScreenshotOptions, ScreenshotResult, ScreenshotUnit
from .events import EventChannel, EventType, PipelineEvent, Subscription
from .state_store import StateStore, MemoryStateStore
from .control import ConfigController, TimeoutMonitor, Outcome
from .progress import ProgressTracker, SessionProgress
from .orchestrator import BatchOrchestrator
from .registry import OrchestratorRegistry
from .sitemap import SitemapDiscovery
