"""Memory hack techniques per subject and topic, and the Memory Hacks flow."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from curriculum import CATALOG, CurriculumCatalog
from engines.outbound import FlowReply, welcome_reply
from schemas import MemoryHacksContext, Subscriber

logger = logging.getLogger(__name__)

MAX_SA_TECHNIQUES = 3
MAX_GENERAL_TECHNIQUES = 2


@dataclass(frozen=True)
class Technique:
    name: str
    description: str
    example: str = ""
    sa_context: bool = False


@dataclass(frozen=True)
class Principle:
    name: str
    description: str
    implementation: str


def _t(name: str, description: str, example: str = "", sa: bool = False) -> Technique:
    return Technique(name, description, example, sa)


# subject -> topic -> techniques; "general" applies to every topic of the subject.
TECHNIQUES: Dict[str, Dict[str, Sequence[Technique]]] = {
    "Mathematics": {
        "general": (
            _t("Landmark Association", "Connect mathematical concepts to South African landmarks",
               "Link pi (π) to the circular route of the Table Mountain cable car", True),
            _t("Township Grid Method", "Use mental maps of township layouts to understand coordinate systems",
               "Remember graphing by visualising the grid-like streets of Soweto", True),
            _t("Safari Sequence", "Remember the order of operations as a road trip",
               "BODMAS: Bloemfontein → Oudtshoorn → Durban → Mbombela → Aliwal North → Springbok", True),
        ),
        "algebra": (
            _t("Variable Visualisation", "Picture variables as containers holding different values",
               "Imagine x as a baking tin that can hold different amounts"),
            _t("Balance Scale Method", "Visualise equations as balance scales that must stay level",
               "Adding 3 to both sides is adding equal weights to each pan"),
        ),
        "geometry": (
            _t("Drakensberg Dimensions", "Use the Drakensberg range to remember 3D shapes",
               "Cathedral Peak for a cone, Sentinel Peak for a pyramid, the Amphitheatre for a prism", True),
            _t("Soccer Field Formulas", "Link geometric formulas to parts of a soccer field",
               "Rectangle area (length × width) is the whole pitch; circle area (πr²) is the centre circle", True),
        ),
        "trigonometry": (
            _t("SOH-CAH-TOA Safari", "Remember the trig ratios with a safari story",
               "SOH: Simba Observes Hippos, CAH: Cheetahs Attack Hyenas, TOA: Tortoises Outrun Antelope", True),
            _t("Unit Circle Compass", "Map unit-circle angles to compass directions",
               "0° = East (Mozambique), 90° = North (Zimbabwe), 180° = West (Atlantic), 270° = South"),
        ),
        "functions": (
            _t("Minibus Route Graphs", "Read a function like a taxi route: input stop in, output stop out",
               "Each x is a pickup point and y is where that passenger gets off", True),
            _t("Shape Families", "Group graphs by their shape before worrying about numbers",
               "Straight line, smile/frown parabola, two-armed hyperbola, exponential ramp"),
        ),
    },
    "Mathematical Literacy": {
        "general": (
            _t("Spaza Shop Maths", "Practise percentages and totals with everyday shop prices",
               "15% VAT on a R20 loaf: move the comma for 10%, halve it for 5%, add them", True),
            _t("Budget Jar Method", "Picture income split into labelled jars",
               "Transport, food, airtime and savings jars show a budget at a glance", True),
        ),
        "finance": (
            _t("Interest Snowball", "Compound interest is a snowball that grows on its own size",
               "Simple interest adds the same amount every year; compound adds to the growing total"),
        ),
        "measurement": (
            _t("Body Ruler", "Use your own body as a reference for lengths",
               "A hand span is about 20 cm and a big stride is about 1 m"),
        ),
    },
    "Physical Sciences": {
        "general": (
            _t("Eskom Power Principles", "Connect electricity concepts to the power grid",
               "Voltage = water pressure in a dam, current = flow rate, resistance = a narrow pipe", True),
        ),
        "mechanics": (
            _t("Taxi Physics", "Use minibus taxi rides to understand Newton's laws",
               "First law (inertia): passengers lean forward when the taxi stops suddenly", True),
        ),
        "electricity": (
            _t("Loadshedding Circuits", "Series circuits fail together, parallel circuits keep running",
               "One blown bulb in a series string darkens the whole braai area", True),
        ),
        "chemistry": (
            _t("Braai Chemistry", "Link chemical reactions to what happens at a braai",
               "Combustion = charcoal burning, Maillard reaction = meat browning", True),
            _t("Periodic Table Townships", "Treat periodic groups as neighbourhoods with similar residents",
               "Alkali metals are the lively neighbours; noble gases keep to themselves", True),
        ),
        "matter": (
            _t("Kettle Phases", "Follow a kettle to remember phase changes",
               "Ice melts, water boils to steam, steam condenses on the window"),
        ),
    },
    "Life Sciences": {
        "general": (
            _t("Kruger Food Webs", "Build food chains from animals in the Kruger National Park",
               "Grass → impala → leopard shows producer, herbivore and carnivore", True),
        ),
        "cells": (
            _t("Cell as a Township", "Map organelles to parts of a busy township",
               "Nucleus = ward office, mitochondria = power station, membrane = the gate", True),
        ),
        "photosynthesis": (
            _t("Sunlight Recipe", "Photosynthesis is a recipe: ingredients in, food out",
               "Carbon dioxide + water + sunlight → glucose + oxygen"),
        ),
        "transport": (
            _t("N1 Highway Circulation", "Arteries carry traffic away from the heart like the N1 out of town",
               "Arteries Away, veins return: A for Away", True),
        ),
    },
    "Geography": {
        "general": (
            _t("Never Eat Soggy Vetkoek", "Remember compass points clockwise from the top",
               "North, East, South, West", True),
        ),
        "mapwork": (
            _t("Contour Staircase", "Read contour lines as steps on a staircase",
               "Lines close together are a steep staircase, far apart a gentle ramp"),
        ),
        "climate": (
            _t("Highveld Thunderstorm Clock", "Afternoon storms show convection rainfall in action",
               "Morning heat rises, clouds build at lunch, thunder by four o'clock", True),
        ),
    },
    "History": {
        "general": (
            _t("Timeline Taxi Rank", "Line events up like taxis waiting in order at a rank",
               "Each taxi is a decade; an event only leaves when its turn comes", True),
        ),
        "apartheid": (
            _t("Law Acronyms", "Group apartheid laws by what they controlled",
               "Land, movement, education and marriage laws each get their own column", True),
        ),
        "cold war": (
            _t("Two Superpower Story", "Tell the Cold War as a rivalry between two neighbours",
               "Every crisis is one neighbour reacting to the other's move"),
        ),
    },
}

PRINCIPLES: Sequence[Principle] = (
    Principle("Spaced Repetition", "Review material at increasing intervals",
              "Study new concepts, then review after 1 day, 3 days, 1 week, etc."),
    Principle("Active Recall", "Test yourself instead of just rereading notes",
              "Cover your notes and try to explain concepts in your own words"),
    Principle("Visual Mnemonics", "Create vivid mental images to remember information",
              "Picture a concept interacting with your neighbourhood or home"),
)

HACKS_MENU = """1️⃣ ➡️ More Hacks
2️⃣ 📝 Practice Questions
3️⃣ 🔄 Different Subject
4️⃣ 🏠 Main Menu"""

SUBJECT_PROMPT = (
    "🧠 *Memory Hacks* ✨\n\n"
    "Which subject would you like memory tricks for?\n"
    "Examples: Mathematics, Physical Sciences, Life Sciences, Geography, History"
)


def hack_topics(subject: str) -> List[str]:
    """Topics with their own techniques, in table order."""

    return [topic for topic in TECHNIQUES.get(subject, {}) if topic != "general"]


def select_techniques(subject: str, topic: Optional[str] = None) -> Dict[str, List[Technique]]:
    """Topic techniques then subject-wide ones, split into SA-context and general."""

    table = TECHNIQUES.get(subject) or TECHNIQUES["Mathematics"]
    pool = list(table.get((topic or "").lower(), ())) + list(table.get("general", ()))
    return {
        "sa_context": [t for t in pool if t.sa_context][:MAX_SA_TECHNIQUES],
        "general": [t for t in pool if not t.sa_context][:MAX_GENERAL_TECHNIQUES],
    }


def format_hacks(subject: str, topic: Optional[str] = None) -> str:
    chosen = select_techniques(subject, topic)
    title = f"{subject}: {topic.title()}" if topic else subject
    lines = [f"🧠 *Memory Hacks for {title}*", ""]

    if chosen["sa_context"]:
        lines += ["*🇿🇦 South African Memory Techniques:*", ""]
        for i, technique in enumerate(chosen["sa_context"], start=1):
            lines += [f"*{i}. {technique.name}*", technique.description, f"_Example:_ {technique.example}", ""]

    if chosen["general"]:
        lines += ["*📚 General Techniques:*", ""]
        for i, technique in enumerate(chosen["general"], start=1):
            lines += [f"*{i}. {technique.name}*", technique.description]
            if technique.example:
                lines.append(f"_Example:_ {technique.example}")
            lines.append("")

    principle = PRINCIPLES[0]
    lines += [
        f"*💡 Key Learning Principle: {principle.name}*",
        principle.description,
        f"_How to use it:_ {principle.implementation}",
        "",
        "*Remember:* The best memory technique is the one that works for YOU. "
        "Try these and adapt them to your own learning style!",
    ]
    return "\n".join(lines)


_MORE = re.compile(r"^1$|more|another|next")
_PRACTICE = re.compile(r"^2$|practi[cs]e|question")
_SWITCH = re.compile(r"^3$|different|switch|change|other subject")
_EXIT = re.compile(r"^4$|menu|main|home")


class MemoryHacksFlow:
    """Subject prompt, then browsing hacks topic by topic."""

    def __init__(self, practice=None, catalog: CurriculumCatalog = CATALOG) -> None:
        self.practice = practice
        self.catalog = catalog

    def start(self, subscriber: Subscriber) -> FlowReply:
        subscriber.enter("memory_hacks")
        return FlowReply(SUBJECT_PROMPT, "Reply with a subject name")

    def _serve(self, subscriber: Subscriber, ctx: MemoryHacksContext) -> FlowReply:
        topics = hack_topics(ctx.subject)
        topic = topics[ctx.topic_index % len(topics)] if topics else None
        events = [("memory_hack_served", {"subject": ctx.subject, "topic": topic})]
        return FlowReply(format_hacks(ctx.subject, topic), HACKS_MENU, events=events)

    async def handle(self, subscriber: Subscriber, text: str) -> FlowReply:
        ctx = subscriber.context
        if not isinstance(ctx, MemoryHacksContext):
            return self.start(subscriber)
        lowered = (text or "").strip().lower()

        if ctx.state == "subject_select":
            subject = self.catalog.resolve_subject(lowered)
            if subject is None:
                subject = subscriber.preferences.last_subject or "Mathematics"
                logger.info("Unrecognised memory-hack subject %r; using %s", text, subject)
            ctx.subject = subject
            ctx.state = "browsing"
            ctx.topic_index = 0
            return self._serve(subscriber, ctx)

        if _MORE.search(lowered):
            ctx.topic_index += 1
            return self._serve(subscriber, ctx)
        if _PRACTICE.search(lowered) and self.practice is not None:
            return self.practice.start_with_subject(subscriber, ctx.subject or "Mathematics")
        if _SWITCH.search(lowered):
            ctx.state = "subject_select"
            ctx.subject = None
            return FlowReply(SUBJECT_PROMPT, "Reply with a subject name")
        if _EXIT.search(lowered):
            subscriber.enter("welcome")
            return welcome_reply(subscriber.preferences.last_subject)

        subject = self.catalog.resolve_subject(lowered)
        if subject is not None:
            ctx.subject = subject
            ctx.topic_index = 0
        return self._serve(subscriber, ctx)
