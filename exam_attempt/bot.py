import discord
from discord.ext import commands
import logging
import asyncio
from typing import Any, Dict, Optional
import os
from pathlib import Path

from .data_manager import DataManager
from .config_manager import ConfigManager
from .exam_controller import COMPLETED, LAST_MINUTE, ExamController
from .remote_store import JsonFileRemoteStore
from .session_store import SessionStore

logger = logging.getLogger(__name__)

OPTION_LABELS = "ABCDEFGHIJKLMNOPQRST"

COLOR_INFO = 0x0099ff
COLOR_SUCCESS = 0x00ff00
COLOR_WARNING = 0xffaa00
COLOR_ERROR = 0xff0000


def format_remaining(seconds: int) -> str:
    minutes, secs = divmod(max(int(seconds), 0), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def build_question_embed(question: Dict[str, Any], remaining_seconds: Optional[int] = None) -> discord.Embed:
    """Render a student-facing question view as an embed."""
    markers = []
    if question['flagged']:
        markers.append("🚩")
    if question['bookmarked']:
        markers.append("🔖")
    if question['marked_for_review']:
        markers.append("👀")

    title = f"Question {question['number']}/{question['total']}"
    if markers:
        title += " " + "".join(markers)

    embed = discord.Embed(title=title, description=question['text'] or "\u200b", color=COLOR_INFO)
    lines = []
    for idx, option in enumerate(question['options']):
        selected = "✅" if idx in question['selected'] else "⬜"
        lines.append(f"{selected} **{OPTION_LABELS[idx]}.** {option}")
    embed.add_field(name="Options", value="\n".join(lines) or "\u200b", inline=False)

    hint = "Select one option" if question['type'] == "single" else "Select all that apply"
    footer = f"{hint} • {question['marks']:g} mark(s)"
    if question.get('section'):
        footer = f"{question['section']} • {footer}"
    if remaining_seconds is not None:
        footer += f" • ⏱️ {format_remaining(remaining_seconds)} left"
    embed.set_footer(text=footer)
    return embed


class OptionButton(discord.ui.Button):
    """Selects one option of the question shown in the view."""

    def __init__(self, index: int, selected: bool):
        super().__init__(
            label=OPTION_LABELS[index],
            style=discord.ButtonStyle.primary if selected else discord.ButtonStyle.secondary,
            row=index // 5,
        )
        self.index = index

    async def callback(self, interaction: discord.Interaction):
        await self.view.bot.handle_option_click(interaction, self.index, self.view.question_id)


class ActionButton(discord.ui.Button):
    """Navigation or marker button of the question view."""

    def __init__(self, action: str, label: str, emoji: str, row: int, active: bool = False):
        super().__init__(
            label=label,
            emoji=emoji,
            style=discord.ButtonStyle.success if active else discord.ButtonStyle.secondary,
            row=row,
        )
        self.action = action

    async def callback(self, interaction: discord.Interaction):
        await self.view.bot.handle_view_action(interaction, self.action)


class QuestionView(discord.ui.View):
    """Buttons for answering and navigating one question."""

    def __init__(self, bot: "ExamBot", user_id: str, question: Dict[str, Any], timeout: float = 900):
        super().__init__(timeout=timeout)
        self.bot = bot
        self.user_id = user_id
        self.question_id = question['question_id']

        for idx in range(min(len(question['options']), 15)):
            self.add_item(OptionButton(idx, idx in question['selected']))

        self.add_item(ActionButton("previous", "Prev", "⬅️", row=3))
        self.add_item(ActionButton("next", "Next", "➡️", row=3))
        self.add_item(ActionButton("flag", "Flag", "🚩", row=4, active=question['flagged']))
        self.add_item(ActionButton("bookmark", "Bookmark", "🔖", row=4, active=question['bookmarked']))
        self.add_item(ActionButton("review", "Review later", "👀", row=4, active=question['marked_for_review']))

    async def interaction_check(self, interaction: discord.Interaction) -> bool:
        if str(interaction.user.id) != self.user_id:
            await interaction.response.send_message("❌ This exam belongs to someone else.", ephemeral=True)
            return False
        return True


class ExamBot(commands.Bot):
    """Discord bot for taking timed exams"""

    def __init__(self, config=None):
        intents = discord.Intents.none()
        intents.guilds = True  # Required for slash commands

        command_prefix = '!'
        if config and 'bot' in config:
            command_prefix = config['bot'].get('command_prefix', '!')

        super().__init__(
            command_prefix=command_prefix,
            intents=intents,
            help_command=None
        )

        self.app_config = config or {}

        self.data_manager: Optional[DataManager] = None
        self.config_manager: Optional[ConfigManager] = None
        self.exam_controller: Optional[ExamController] = None

    async def setup_hook(self):
        """Called when the bot is starting up"""
        try:
            logger.info("Setting up bot components...")

            self.config_manager = ConfigManager()
            if self.app_config:
                self.apply_configuration()

            self.data_manager = DataManager(self.config_manager.get_quiz_directory())
            storage_dir = Path(self.config_manager.get_storage_directory())
            self.exam_controller = ExamController(
                self.data_manager,
                self.config_manager,
                SessionStore(storage_dir / "sessions.json"),
                JsonFileRemoteStore(storage_dir),
            )
            self.exam_controller.add_listener(COMPLETED, self.notify_completion)
            self.exam_controller.add_listener(LAST_MINUTE, self.notify_last_minute)

            await self.load_quiz_data()
            await self.setup_commands()

            logger.info("Bot setup completed successfully")

        except Exception as e:
            logger.error(f"Error during bot setup: {e}")
            raise

    def apply_configuration(self):
        """Apply settings from configuration file to the config manager."""
        result = self.config_manager.apply_config(self.app_config)
        if result['success']:
            logger.info(f"Configuration applied: {', '.join(result['applied']) or 'defaults'}")
        else:
            # Invalid values keep their defaults
            for error in result['errors']:
                logger.warning(f"Configuration issue: {error}")

    async def setup_commands(self):
        """Register all slash commands"""
        @self.tree.command(name="help", description="Display available commands and their descriptions")
        async def help_command(interaction: discord.Interaction):
            await self.handle_help(interaction)

        @self.tree.command(name="exams", description="List the available exams")
        async def exams_command(interaction: discord.Interaction):
            await self.handle_exams(interaction)

        @self.tree.command(name="start_exam", description="Start an exam, or resume your saved attempt")
        async def start_exam_command(interaction: discord.Interaction, exam_id: int):
            await self.handle_start_exam(interaction, exam_id)

        @self.tree.command(name="question", description="Show your current question")
        async def question_command(interaction: discord.Interaction):
            await self.handle_question(interaction)

        @self.tree.command(name="next", description="Go to the next question")
        async def next_command(interaction: discord.Interaction):
            await self.handle_navigate(interaction, "next")

        @self.tree.command(name="prev", description="Go to the previous question")
        async def prev_command(interaction: discord.Interaction):
            await self.handle_navigate(interaction, "previous")

        @self.tree.command(name="next_section", description="Jump to the first question of the next section")
        async def next_section_command(interaction: discord.Interaction):
            await self.handle_navigate(interaction, "next_section")

        @self.tree.command(name="goto", description="Go to a question by number")
        async def goto_command(interaction: discord.Interaction, number: int):
            await self.handle_navigate(interaction, "goto", number)

        @self.tree.command(name="answer", description="Select an option (A, B, C...) of the current question")
        async def answer_command(interaction: discord.Interaction, option: str):
            await self.handle_answer(interaction, option)

        @self.tree.command(name="flag", description="Flag or unflag the current question")
        async def flag_command(interaction: discord.Interaction):
            await self.handle_marker(interaction, "flag")

        @self.tree.command(name="bookmark", description="Bookmark or unbookmark the current question")
        async def bookmark_command(interaction: discord.Interaction):
            await self.handle_marker(interaction, "bookmark")

        @self.tree.command(name="mark_review", description="Mark the current question for review")
        async def mark_review_command(interaction: discord.Interaction):
            await self.handle_marker(interaction, "review")

        @self.tree.command(name="status", description="Show time left and exam progress")
        async def status_command(interaction: discord.Interaction):
            await self.handle_status(interaction)

        @self.tree.command(name="submit", description="Submit your exam")
        async def submit_command(interaction: discord.Interaction):
            await self.handle_submit(interaction)

        @self.tree.command(name="review", description="Review your answers after submitting")
        async def review_command(interaction: discord.Interaction):
            await self.handle_review(interaction)

        @self.tree.command(name="my_attempts", description="List your submitted attempts and scores")
        async def my_attempts_command(interaction: discord.Interaction, exam_id: Optional[int] = None):
            await self.handle_my_attempts(interaction, exam_id)

        logger.info("Slash commands registered successfully")

    async def load_quiz_data(self):
        """Load exam files from the quiz directory"""
        loaded = self.data_manager.load_quiz_files()
        logger.info(f"Loaded {len(loaded)} exams from {self.data_manager.quiz_directory}")
        for error in self.data_manager.get_load_errors():
            logger.warning(f"Exam loading issue: {error}")

    # Gateway events

    async def on_ready(self):
        """Called when the bot has connected (or reconnected) to Discord"""
        logger.info(f"Bot is ready! Logged in as {self.user}")
        print(f"🤖 {self.user} is Ready and Online!")
        print(f"📊 Connected to {len(self.guilds)} server(s)")
        if self.exam_controller is not None and not self.exam_controller.online:
            self.exam_controller.set_connectivity(True)

        try:
            synced = await self.tree.sync()
            logger.info(f"Synced {len(synced)} slash commands")
            print(f"⚡ Synced {len(synced)} slash commands")
        except discord.HTTPException as e:
            logger.error(f"Failed to sync slash commands: {e}")

    async def on_disconnect(self):
        """Gateway connection lost: timers pause until it is back"""
        if self.exam_controller is not None:
            self.exam_controller.set_connectivity(False)

    async def on_resumed(self):
        if self.exam_controller is not None:
            self.exam_controller.set_connectivity(True)

    async def on_error(self, event, *args, **kwargs):
        logger.error(f"An error occurred in event {event}", exc_info=True)

    async def close(self):
        """Flush every live exam before disconnecting"""
        if self.exam_controller is not None:
            try:
                await self.exam_controller.shutdown()
            except Exception as e:
                logger.error(f"Error flushing exams on shutdown: {e}", exc_info=True)
        await super().close()

    # Responses

    async def send_response(
        self,
        interaction: discord.Interaction,
        embed: Optional[discord.Embed] = None,
        content: Optional[str] = None,
        view: Optional[discord.ui.View] = None,
        edit: bool = False,
        max_retries: int = 3,
    ):
        """Send (or edit into) an ephemeral response, retrying transient API errors"""
        kwargs = {}
        if embed is not None:
            kwargs['embed'] = embed
        if content is not None:
            kwargs['content'] = content
        if view is not None:
            kwargs['view'] = view

        for attempt in range(max_retries):
            try:
                if edit and not interaction.response.is_done():
                    await interaction.response.edit_message(**kwargs)
                elif interaction.response.is_done():
                    await interaction.followup.send(ephemeral=True, **kwargs)
                else:
                    await interaction.response.send_message(ephemeral=True, **kwargs)
                return
            except discord.HTTPException as e:
                if not await self.handle_discord_api_error(e, "send_response", interaction):
                    return
                if attempt == max_retries - 1:
                    logger.error(f"All retry attempts failed for response: {e}")

    async def send_error_response(self, interaction: discord.Interaction, message: str, title: str = "❌ Error"):
        """Send error response to user with fallback handling"""
        try:
            embed = discord.Embed(title=title, description=message, color=COLOR_ERROR)
            if interaction.response.is_done():
                await interaction.followup.send(embed=embed, ephemeral=True)
            else:
                await interaction.response.send_message(embed=embed, ephemeral=True)
        except discord.HTTPException as e:
            logger.error(f"Failed to send error embed: {e}")
            try:
                simple_message = f"{title}: {message}"
                if interaction.response.is_done():
                    await interaction.followup.send(simple_message, ephemeral=True)
                else:
                    await interaction.response.send_message(simple_message, ephemeral=True)
            except discord.HTTPException:
                logger.error("Failed to send fallback error message")

    async def send_result_error(self, interaction: discord.Interaction, result: Dict[str, Any], title: str):
        await self.send_error_response(
            interaction,
            result.get('user_message', "❌ Something went wrong. Please try again."),
            title
        )

    async def handle_discord_api_error(self, error: Exception, operation: str, interaction: discord.Interaction = None) -> bool:
        """
        Handle Discord API errors.

        Returns:
            True if the operation should be retried, False otherwise
        """
        if isinstance(error, discord.HTTPException):
            if error.status == 429:
                retry_after = getattr(error, 'retry_after', 5)
                logger.warning(f"Rate limited during {operation}, waiting {retry_after}s")
                await asyncio.sleep(retry_after)
                return True

            if error.status in [500, 502, 503, 504]:
                logger.warning(f"Discord server error during {operation}: {error.status}")
                await asyncio.sleep(2)
                return True

            if error.status == 403:
                logger.error(f"Permission denied during {operation}: {error}")
                return False

            logger.error(f"Discord API error during {operation}: {error}")
            return False

        if isinstance(error, asyncio.TimeoutError):
            logger.warning(f"Timeout during {operation}")
            return False

        logger.error(f"Unexpected error during {operation}: {error}")
        return False

    async def show_question(self, interaction: discord.Interaction, result: Dict[str, Any], edit: bool = False):
        """Render a controller result carrying a question view"""
        user_id = str(interaction.user.id)
        question = result['question']
        status = self.exam_controller.get_status(user_id)
        remaining = status['status']['remaining_seconds'] if status['success'] else None
        embed = build_question_embed(question, remaining)
        if result.get('user_message') and not edit:
            embed.description = f"{result['user_message']}\n\n{embed.description}"
        await self.send_response(
            interaction,
            embed=embed,
            view=QuestionView(self, user_id, question),
            edit=edit,
        )

    # Command handlers

    async def handle_help(self, interaction: discord.Interaction):
        """Handle /help command"""
        try:
            help_embed = discord.Embed(
                title="🎯 Exam Bot Commands",
                description="Take timed exams. Your answers are saved as you go.",
                color=COLOR_SUCCESS
            )
            help_embed.add_field(
                name="📚 Exams",
                value=(
                    "`/exams` - List the available exams\n"
                    "`/start_exam <id>` - Start an exam, or resume your saved attempt\n"
                    "`/submit` - Submit your exam\n"
                    "`/review` - Review your answers after submitting\n"
                    "`/my_attempts [id]` - Your submitted attempts and scores"
                ),
                inline=False
            )
            help_embed.add_field(
                name="🧭 During the Exam",
                value=(
                    "`/question` - Show your current question\n"
                    "`/answer <A-T>` - Select an option\n"
                    "`/next`, `/prev`, `/goto <n>`, `/next_section` - Move around\n"
                    "`/flag`, `/bookmark`, `/mark_review` - Mark the current question\n"
                    "`/status` - Time left and progress"
                ),
                inline=False
            )
            help_embed.add_field(
                name="⚙️ Current Settings",
                value=f"```\n{self.config_manager.get_settings_summary()}\n```",
                inline=False
            )
            help_embed.set_footer(text="Submitting is final. The exam is submitted for you when time runs out.")
            await interaction.response.send_message(embed=help_embed, ephemeral=True)

        except discord.HTTPException as e:
            logger.error(f"Error in help command: {e}")
            await self.send_error_response(interaction, "Could not display help", "❌ Help Error")

    async def handle_exams(self, interaction: discord.Interaction):
        """Handle /exams command"""
        quizzes = self.exam_controller.get_available_quizzes()
        if not quizzes:
            embed = discord.Embed(
                title="📚 Available Exams",
                description="No exams found. Add JSON files to the quiz directory.",
                color=COLOR_WARNING
            )
            if self.data_manager.has_load_errors():
                error_summary = "\n".join(self.data_manager.get_load_errors()[:3])
                embed.add_field(name="Loading Errors", value=f"```\n{error_summary}\n```", inline=False)
            await self.send_response(interaction, embed=embed)
            return

        embed = discord.Embed(title="📚 Available Exams", color=COLOR_INFO)
        for quiz in quizzes[:25]:
            duration = f"{quiz['duration_minutes']:g} min" if quiz['duration_minutes'] else "untimed default"
            embed.add_field(
                name=f"#{quiz['id']} {quiz['title']}",
                value=f"{quiz['questions']} questions • {duration} • {quiz['max_attempts']} attempt(s)",
                inline=False
            )
        embed.set_footer(text="Start with /start_exam <id>")
        await self.send_response(interaction, embed=embed)

    async def handle_start_exam(self, interaction: discord.Interaction, exam_id: int):
        """Handle /start_exam command"""
        try:
            result = await self.exam_controller.start_exam(
                exam_id, str(interaction.user.id), user_name=interaction.user.display_name
            )
        except Exception as e:
            logger.error(f"Error in start_exam command: {e}", exc_info=True)
            await self.send_error_response(interaction, "Failed to start the exam. Please try again.", "❌ Exam Error")
            return

        if not result['success']:
            await self.send_result_error(interaction, result, "❌ Cannot Start Exam")
            return
        await self.show_question(interaction, result)

    async def handle_question(self, interaction: discord.Interaction):
        """Handle /question command"""
        result = self.exam_controller.get_question(str(interaction.user.id))
        if not result['success']:
            await self.send_result_error(interaction, result, "❌ No Exam")
            return
        await self.show_question(interaction, result)

    async def handle_navigate(self, interaction: discord.Interaction, action: str, number: Optional[int] = None, edit: bool = False):
        """Handle /next, /prev, /goto and /next_section"""
        result = self.exam_controller.navigate(str(interaction.user.id), action, number)
        if not result['success']:
            await self.send_result_error(interaction, result, "❌ Navigation Error")
            return
        await self.show_question(interaction, result, edit=edit)

    async def handle_answer(self, interaction: discord.Interaction, option: str):
        """Handle /answer command"""
        letter = (option or "").strip().upper()
        if len(letter) != 1 or letter not in OPTION_LABELS:
            await self.send_error_response(interaction, "Choose an option letter such as A, B or C.", "❌ Invalid Option")
            return
        result = self.exam_controller.select_option(str(interaction.user.id), OPTION_LABELS.index(letter))
        if not result['success']:
            await self.send_result_error(interaction, result, "❌ Answer Not Saved")
            return
        await self.show_question(interaction, result)

    async def handle_option_click(self, interaction: discord.Interaction, option_index: int, question_id: int):
        """Option button in a question view"""
        result = self.exam_controller.select_option(str(interaction.user.id), option_index, question_id)
        if not result['success']:
            await self.send_result_error(interaction, result, "❌ Answer Not Saved")
            return
        await self.show_question(interaction, result, edit=True)

    async def handle_view_action(self, interaction: discord.Interaction, action: str):
        """Navigation or marker button in a question view"""
        if action in ("previous", "next"):
            await self.handle_navigate(interaction, action, edit=True)
        else:
            await self.handle_marker(interaction, action, edit=True)

    async def handle_marker(self, interaction: discord.Interaction, marker: str, edit: bool = False):
        """Handle /flag, /bookmark and /mark_review"""
        result = self.exam_controller.toggle_marker(str(interaction.user.id), marker)
        if not result['success']:
            await self.send_result_error(interaction, result, "❌ Could Not Update Question")
            return
        await self.show_question(interaction, result, edit=edit)

    async def handle_status(self, interaction: discord.Interaction):
        """Handle /status command"""
        result = self.exam_controller.get_status(str(interaction.user.id))
        if not result['success']:
            await self.send_result_error(interaction, result, "❌ No Exam")
            return

        status = result['status']
        embed = discord.Embed(
            title=f"📊 {status['quiz_title']}",
            color=COLOR_WARNING if status['is_paused'] else COLOR_INFO
        )
        embed.add_field(name="⏱️ Time Left", value=format_remaining(status['remaining_seconds']), inline=True)
        embed.add_field(
            name="📝 Answered",
            value=f"{status['answered']}/{status['total_questions']}",
            inline=True
        )
        embed.add_field(name="📍 Current", value=f"Question {status['current_question']}", inline=True)
        embed.add_field(
            name="🏷️ Marked",
            value=f"🚩 {status['flagged']} • 🔖 {status['bookmarked']} • 👀 {status['marked_for_review']}",
            inline=False
        )
        if status['violation_count']:
            embed.add_field(
                name="⚠️ Integrity Warnings",
                value=f"{status['violation_count']}/{status['violation_threshold']}",
                inline=False
            )
        if status['is_paused']:
            embed.set_footer(text="Timer paused while the connection is down")
        await self.send_response(interaction, embed=embed)

    async def handle_submit(self, interaction: discord.Interaction):
        """Handle /submit command"""
        await interaction.response.defer(ephemeral=True, thinking=True)
        result = await self.exam_controller.submit(str(interaction.user.id))
        if not result['success']:
            await self.send_result_error(interaction, result, "❌ Submission Failed")
            return

        record = result['record']
        embed = discord.Embed(
            title="✅ Exam Submitted",
            description=result['user_message'],
            color=COLOR_SUCCESS
        )
        embed.add_field(
            name="Score",
            value=f"{record['score']}/{record['total_marks']} ({record['percentage']}%)",
            inline=True
        )
        embed.add_field(name="Result", value="🎉 Passed" if record['passed'] else "Not passed", inline=True)
        embed.set_footer(text="Use /review to see the correct answers")
        await self.send_response(interaction, embed=embed)

    async def handle_review(self, interaction: discord.Interaction):
        """Handle /review command"""
        result = self.exam_controller.review(str(interaction.user.id))
        if not result['success']:
            await self.send_result_error(interaction, result, "🔒 Review Unavailable")
            return

        embed = discord.Embed(title=f"🔍 Review: {result['quiz_title']}", color=COLOR_INFO)
        for item in result['review'][:25]:
            icon = "✅" if item['fully_correct'] else ("➗" if item['obtained'] > 0 else "❌")
            selected = ", ".join(item['selected']) or "no answer"
            correct = ", ".join(item['correct']) or "none"
            value = f"Your answer: {selected}\nCorrect: {correct}"
            if item['explanation']:
                value += f"\n💡 {item['explanation']}"
            embed.add_field(
                name=f"{icon} Q{item['number']} ({item['obtained']:g}/{item['marks']:g})",
                value=value[:1024],
                inline=False
            )
        await self.send_response(interaction, embed=embed)

    async def handle_my_attempts(self, interaction: discord.Interaction, exam_id: Optional[int] = None):
        """Handle /my_attempts command"""
        result = await self.exam_controller.get_attempt_history(str(interaction.user.id), exam_id)
        if not result['success']:
            await self.send_result_error(interaction, result, "❌ History Unavailable")
            return

        attempts = result['attempts']
        embed = discord.Embed(title="🗂️ Your Attempts", color=COLOR_INFO)
        if not attempts:
            embed.description = "No submitted attempts yet."
        for attempt in attempts[:25]:
            outcome = "🎉 Passed" if attempt['passed'] else "Not passed"
            embed.add_field(
                name=f"#{attempt['quiz_id']} {attempt['quiz_title']}",
                value=(
                    f"{attempt['score']}/{attempt['total_marks']} ({attempt['percentage']}%) • {outcome}\n"
                    f"Submitted: {attempt['submitted_at']}"
                ),
                inline=False
            )
        await self.send_response(interaction, embed=embed)

    # Controller notifications

    async def notify_completion(self, user_id: str, record: Dict[str, Any]):
        """DM the student once their submission has been stored"""
        try:
            user = await self.fetch_user(int(user_id))
            embed = discord.Embed(
                title="📬 Your exam has been recorded",
                description=(
                    f"Score: **{record['score']}/{record['total_marks']}** ({record['percentage']}%)\n"
                    f"Submitted: {record['submitted_at']}"
                ),
                color=COLOR_SUCCESS if record['passed'] else COLOR_WARNING
            )
            await user.send(embed=embed)
        except (discord.HTTPException, ValueError) as e:
            logger.warning(f"Could not notify user {user_id} about their submission: {e}")

    async def notify_last_minute(self, user_id: str, quiz_id: int, remaining_seconds: int):
        try:
            user = await self.fetch_user(int(user_id))
            await user.send(
                f"⏰ Less than {max(remaining_seconds, 1)} seconds left on exam #{quiz_id}. "
                "It will be submitted automatically when time runs out."
            )
        except (discord.HTTPException, ValueError) as e:
            logger.warning(f"Could not send last-minute warning to user {user_id}: {e}")


async def run_bot(token=None, config=None):
    """Run the bot with proper error handling"""
    if not token:
        token = os.getenv('DISCORD_BOT_TOKEN')

    if not token:
        logger.error("No Discord bot token provided")
        return

    bot = ExamBot(config)

    try:
        logger.info("Starting Discord Exam Bot...")
        await bot.start(token)
    except discord.LoginFailure:
        logger.error("Invalid bot token provided")
    except discord.HTTPException as e:
        logger.error(f"HTTP error occurred: {e}")
    finally:
        if not bot.is_closed():
            await bot.close()
