"""
Preset catalogue for the photo studio.
Styles, themes, model options and UI translations used by pages and jobs.
"""

from dataclasses import dataclass
from typing import Dict, List


@dataclass(frozen=True)
class StyleItem:
    """A preset style applied to the uploaded portrait."""
    id: str
    title: str
    emoji: str
    prompt: str


@dataclass(frozen=True)
class Theme:
    """Visual theme; fields are CSS class fragments consumed by templates."""
    id: str
    name: str
    emoji: str
    bg: str
    primary: str
    secondary: str
    text: str
    accent: str
    border: str
    gradient: str
    button_shadow: str
    card_bg: str


DEFAULT_THEME = "banana"
DEFAULT_LANG = "zh"
DEFAULT_MODEL = "gemini-2.5-flash-image"

# Price shown on the subscription card
SUBSCRIPTION_PRICE_LABEL = "$10"

MODEL_OPTIONS: List[Dict[str, str]] = [
    {"value": "nano-banana", "label": "Nano Banana"},
    {"value": "gemini-3-pro-image-preview", "label": "Gemini 3 Pro Image (Nano Banana Pro)"},
    {"value": "gemini-2.5-flash-image", "label": "Gemini 2.5 Flash"},
]

THEMES: Dict[str, Theme] = {
    "banana": Theme(
        id="banana",
        name="Nano Banana",
        emoji="🍌",
        bg="bg-[#FEF9C3]",
        primary="bg-[#FACC15]",
        secondary="bg-[#FEF08A]",
        text="text-stone-800",
        accent="text-[#854D0E]",
        border="border-[#FDE047]",
        gradient="from-[#FACC15] to-[#FB923C]",
        button_shadow="shadow-[#EAB308]/40",
        card_bg="bg-white",
    ),
    "berry": Theme(
        id="berry",
        name="Sweet Berry",
        emoji="🍓",
        bg="bg-[#FFF1F2]",
        primary="bg-[#FB7185]",
        secondary="bg-[#FECDD3]",
        text="text-rose-900",
        accent="text-[#881337]",
        border="border-[#FDA4AF]",
        gradient="from-[#FB7185] to-[#E11D48]",
        button_shadow="shadow-[#F43F5E]/40",
        card_bg="bg-white",
    ),
    "mint": Theme(
        id="mint",
        name="Fresh Mint",
        emoji="🌿",
        bg="bg-[#ECFCCB]",
        primary="bg-[#A3E635]",
        secondary="bg-[#D9F99D]",
        text="text-lime-900",
        accent="text-[#365314]",
        border="border-[#BEF264]",
        gradient="from-[#A3E635] to-[#22C55E]",
        button_shadow="shadow-[#84CC16]/40",
        card_bg="bg-white",
    ),
    "cyber": Theme(
        id="cyber",
        name="Cyber Pop",
        emoji="🔮",
        bg="bg-[#F3E8FF]",
        primary="bg-[#C084FC]",
        secondary="bg-[#E9D5FF]",
        text="text-purple-900",
        accent="text-[#581C87]",
        border="border-[#D8B4FE]",
        gradient="from-[#C084FC] to-[#818CF8]",
        button_shadow="shadow-[#A855F7]/40",
        card_bg="bg-white",
    ),
}

STYLES: List[StyleItem] = [
    StyleItem(
        id="美式杂志封面",
        title="美式杂志封面",
        emoji="🎤",
        prompt=(
            "  Vogue US / Harper’s Bazaar / Vanity Fair 封面级别，大光圈、奶油般虚化背景，黄金大背光+柔光正面补光，"
            "人物穿着华丽晚礼服或高级休闲（可参考当前季节流行趋势），妆容精致无瑕、发型蓬松有光泽，"
            "姿势经典封面三七分或45度角，底部留白位置可出现极简杂志标题（如大写衬线体“VOGUE”或“BAZAAR”），"
            "整体色调饱和而华丽，充满美式奢华与自信."
        ),
    ),
    StyleItem(
        id="school",
        title="高中生活",
        emoji="🏫",
        prompt=(
            "High teen fashion style, elite private school uniform, plaid skirt, golden hour sunlight, "
            "soft dreamy atmosphere, 90s retro vibe, Polaroid aesthetic. "
            "[IDENTITY CONSTRAINT]: Strictly maintain facial identity."
        ),
    ),
    StyleItem(
        id="美术馆迷失的她",
        title="美术馆迷失的她",
        emoji="👾",
        prompt=(
            "人物独自站在空旷的欧洲古典美术馆（大理石地板、高耸穹顶、远处悬挂巨大文艺复兴油画），"
            "穿着黑色高领毛衣+宽松长裙或极简长风衣，侧身或回眸凝视一幅古典油画，"
            "自然窗光从侧后方洒下形成柔和伦勃朗光，氛围孤独、忧郁、文艺而高级，色调偏冷灰+微暖高光，"
            "像 Gregory Crewdson 与陈曼的混合体，极强电影感与故事感."
        ),
    ),
    StyleItem(
        id="职业肖像照",
        title="职业肖像照",
        emoji="☁️",
        prompt=(
            "极简主义高级灰/深蓝/白色摄影棚背景，冷白补光+轻微蝴蝶光，主光源45度角打造立体五官，"
            "人物穿着高级定制西装或极简职业套装，妆容干净干练，眼神坚定自信，背景完全虚化，"
            "整体色调冷峻优雅，像 LinkedIn 头像的最高级版本，参考摄影师 Peter Lindbergh 的极简人像风格."
        ),
    ),
]

TRANSLATIONS: Dict[str, Dict[str, str]] = {
    "zh": {
        "appTitle": "AI 写真馆",
        "subtitle": "Nano Banana OS",
        "settings": "设置",
        "uploadTitle": "点击上传照片",
        "uploadDesc": "自拍 / 半身照 (最大 8MB)",
        "changePhoto": "更换照片",
        "makeMagic": "开始魔法生成",
        "designing": "正在设计...",
        "save": "保存原图",
        "tryAgain": "重试",
        "failed": "生成失败",
        "rendering": "渲染中",
        "provider": "接口服务商",
        "official": "Google 官方",
        "thirdParty": "第三方转发",
        "model": "选择模型",
        "saveChanges": "保存配置",
        "apiKeyPlaceholder": "输入 API Key (默认: 123456)",
        "googleKeyPlaceholder": "输入 Google API Key (AIzaSy...)",
        "baseUrlPlaceholder": "输入 Base URL (默认: https://proxy.flydao.top)",
        "modePreset": "大师预设",
        "modeCustom": "自定义风格",
        "customPlaceholder": "请描述你想要的风格...\n例如：赛博朋克城市背景，霓虹灯光，未来感机甲，下雨天，电影质感...",
        "customTitle": "自定义创作",
        "promptLabel": "自定义提示词",
        "customGenBtn": "生成自定义写真",
        "errorTooLarge": "图片太大了 (>8MB) 🍬",
        "errorNoKey": "请先去设置配置 API Key 🔑",
        "errorGenFailed": "生成失败了 🥲",
        "errorNotImage": "请上传有效的图片文件",
        "errorNoPrompt": "请先输入自定义提示词",
        "testConnection": "测试连接",
        "testing": "连接测试中...",
        "testSuccess": "连接成功！API 有效 ✅",
        "testFailed": "连接失败: ",
        "logout": "退出登录",
        "profileTitle": "个人档案",
        "fullName": "全名",
        "bio": "个人简介",
        "bioPlaceholder": "写一句话介绍你自己...",
        "email": "电子邮箱",
        "subscription": "订阅计划",
        "planFree": "免费版",
        "planPro": "专业版",
        "renewsOn": "续费日期",
        "saveProfile": "保存资料",
        "backToDash": "返回创作",
        "profileSaved": "资料已更新 ✨",
        "profileSaveFailed": "资料保存失败",
        "changeAvatar": "更换头像",
        "uploading": "上传中...",
        "errorAvatarSize": "头像图片不能超过 2MB",
        "errorUploadFailed": "头像上传失败",
        "upgradeToPro": "升级专业版",
        "subscribeTitle": "解锁专业版",
        "subscribeSubtitle": "更快的模型，更多的创意",
        "perMonth": "/ 月",
        "feature1": "无限次高清生成",
        "feature2": "优先使用 Nano Banana Pro 模型",
        "feature3": "全部大师预设与自定义风格",
        "feature4": "专属客服支持",
        "subscribeBtn": "立即订阅",
        "restorePurchase": "恢复购买",
        "paymentInitFailed": "支付初始化失败",
        "paymentSuccessTitle": "支付成功 🎉",
        "paymentSuccessDesc": "欢迎加入专业版，尽情创作吧！",
        "returnHome": "返回首页",
        "paymentCancelTitle": "支付已取消",
        "paymentCancelDesc": "没有产生任何费用，你可以随时重新订阅。",
        "retry": "重试",
        "edit": "编辑",
        "editTitle": "精修这张照片",
        "editPlaceholder": "描述你想要的修改，例如：把背景换成海边日落...",
        "applyEdit": "应用修改",
        "cancel": "取消",
        "history": "历史记录",
        "historyEmpty": "还没有生成记录",
        "clearHistory": "清空记录",
        "loginTitle": "欢迎回来",
        "signupTitle": "创建账号",
        "password": "密码",
        "signIn": "登录",
        "signUp": "注册",
        "noAccount": "还没有账号？",
        "haveAccount": "已经有账号了？",
        "verifyEmailTitle": "请查收邮件",
        "verifyEmailDesc": "我们已向你的邮箱发送了验证链接，完成验证后即可登录。",
        "configWarningTitle": "尚未配置 Supabase",
        "configWarningDesc": "请设置 SUPABASE_URL 和 SUPABASE_ANON_KEY 环境变量后重启服务。",
        "theme": "主题",
        "language": "语言",
        "download": "下载",
    },
    "en": {
        "appTitle": "AI Photo Booth",
        "subtitle": "Nano Banana OS",
        "settings": "Settings",
        "uploadTitle": "Tap to Upload",
        "uploadDesc": "Selfie / Portrait (Max 8MB)",
        "changePhoto": "Change Photo",
        "makeMagic": "MAKE MAGIC",
        "designing": "Designing...",
        "save": "SAVE",
        "tryAgain": "Try Again",
        "failed": "Failed",
        "rendering": "RENDERING",
        "provider": "Provider",
        "official": "Official",
        "thirdParty": "Third Party",
        "model": "Select Model",
        "saveChanges": "Save Changes",
        "apiKeyPlaceholder": "Enter API Key (Default: 123456)",
        "googleKeyPlaceholder": "Enter Google Key (AIzaSy...)",
        "baseUrlPlaceholder": "Enter Base URL (Default: https://proxy.flydao.top)",
        "modePreset": "Master Presets",
        "modeCustom": "Custom Vibe",
        "customPlaceholder": "Describe your dream style...\ne.g. Cyberpunk city, neon lights, futuristic armor, rainy day, cinematic lighting...",
        "customTitle": "Custom Creation",
        "promptLabel": "Your Prompt",
        "customGenBtn": "Generate Custom Vibe",
        "errorTooLarge": "Image too large (>8MB) 🍬",
        "errorNoKey": "Please configure API Key first 🔑",
        "errorGenFailed": "Generation failed 🥲",
        "errorNotImage": "Please upload a valid image file",
        "errorNoPrompt": "Please describe your custom style first",
        "testConnection": "Test Connection",
        "testing": "Testing...",
        "testSuccess": "Connection Verified ✅",
        "testFailed": "Connection Failed: ",
        "logout": "Log out",
        "profileTitle": "My Profile",
        "fullName": "Full Name",
        "bio": "Bio",
        "bioPlaceholder": "A short intro about you...",
        "email": "Email",
        "subscription": "Subscription",
        "planFree": "Free Tier",
        "planPro": "Pro Tier",
        "renewsOn": "Renews on",
        "saveProfile": "Save Profile",
        "backToDash": "Back to Studio",
        "profileSaved": "Profile Updated ✨",
        "profileSaveFailed": "Error saving profile",
        "changeAvatar": "Change Avatar",
        "uploading": "Uploading...",
        "errorAvatarSize": "Avatar must be under 2MB",
        "errorUploadFailed": "Avatar upload failed",
        "upgradeToPro": "Upgrade to Pro",
        "subscribeTitle": "Go Pro",
        "subscribeSubtitle": "Faster models, more creativity",
        "perMonth": "/ month",
        "feature1": "Unlimited HD generations",
        "feature2": "Priority access to Nano Banana Pro",
        "feature3": "All master presets and custom vibes",
        "feature4": "Dedicated support",
        "subscribeBtn": "Subscribe Now",
        "restorePurchase": "Restore Purchase",
        "paymentInitFailed": "Payment initialization failed",
        "paymentSuccessTitle": "Payment Successful 🎉",
        "paymentSuccessDesc": "Welcome to Pro. Go create something amazing!",
        "returnHome": "Return Home",
        "paymentCancelTitle": "Payment Cancelled",
        "paymentCancelDesc": "You have not been charged. You can subscribe again at any time.",
        "retry": "Retry",
        "edit": "Edit",
        "editTitle": "Refine this photo",
        "editPlaceholder": "Describe your change, e.g. swap the background for a beach sunset...",
        "applyEdit": "Apply Edit",
        "cancel": "Cancel",
        "history": "History",
        "historyEmpty": "No generations yet",
        "clearHistory": "Clear History",
        "loginTitle": "Welcome back",
        "signupTitle": "Create an account",
        "password": "Password",
        "signIn": "Sign In",
        "signUp": "Sign Up",
        "noAccount": "Don't have an account?",
        "haveAccount": "Already have an account?",
        "verifyEmailTitle": "Check your email",
        "verifyEmailDesc": "We sent a verification link to your inbox. Confirm it, then sign in.",
        "configWarningTitle": "Supabase is not configured",
        "configWarningDesc": "Set SUPABASE_URL and SUPABASE_ANON_KEY and restart the server.",
        "theme": "Theme",
        "language": "Language",
        "download": "Download",
    },
}


def get_theme(theme_id: str) -> Theme:
    """Return the theme for an id, falling back to the default theme."""
    return THEMES.get(theme_id) or THEMES[DEFAULT_THEME]


def translate(lang: str, key: str) -> str:
    """Look up a UI string; falls back to English, then to the key itself."""
    table = TRANSLATIONS.get(lang) or TRANSLATIONS[DEFAULT_LANG]
    if key in table:
        return table[key]
    return TRANSLATIONS["en"].get(key, key)


def model_badge(model: str) -> str:
    return "PRO" if "pro" in (model or "") else "FAST"


def is_known_model(model: str) -> bool:
    return any(opt["value"] == model for opt in MODEL_OPTIONS)
