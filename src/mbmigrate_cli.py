"""
Mbmigrate CLI Module

Interactive menu for managing the configured media servers and running
migrations between two of them. This is the only layer that catches
migration errors: failures are logged as a single summary line and the menu
continues.
"""

from typing import Dict, Optional

from src.mbmigrate_logging import log_migration_operation, log_user_migration, logger
from src.mbmigrate_service import MigrationError
from src.mbmigrate_sync import MediaServerManager, MigrationOptions, MigrationReport, ask_confirmation


class CliInterface:
    """
    Command-line interface for the Mbmigrate application.

    Provides an interactive menu for adding and removing servers, comparing
    the users of two servers and migrating users or a user's watch history
    from a source server into a target server.
    """

    def __init__(self):
        """Initialize the CLI interface with the server manager."""
        self.manager = MediaServerManager()

    def display_menu(self) -> None:
        """Display the main menu options."""
        print("\nOptions:")
        print("1. Add a new media server")
        print("2. Remove a media server")
        print("3. View configured servers")
        print("4. Diff users")
        print("5. Migrate users")
        print("6. Migrate user watch history")
        print("7. Exit")

    def get_server_choice(self, prompt: str, exclude: Optional[str] = None) -> Optional[str]:
        """
        Get a user selection from configured servers.

        Args:
            prompt: Message to display when asking for selection
            exclude: Server name left out of the choices

        Returns:
            Optional[str]: Selected server name or None if invalid selection
        """
        names = [name for name in self.manager.servers if name != exclude]
        if not names:
            print("No servers configured.")
            return None

        print("\nAvailable servers:")
        for i, name in enumerate(names, 1):
            print(f"{i}. {name} ({self.manager.servers[name]['type']})")

        try:
            index = int(input(prompt)) - 1
            if 0 <= index < len(names):
                return names[index]
            print("Invalid server number.")
            return None
        except ValueError:
            print("Invalid input. Please enter a number.")
            return None

    def get_server_pair(self) -> Optional[tuple]:
        """Ask for a source and a distinct target server."""
        source_name = self.get_server_choice("Enter the number of the source server: ")
        if not source_name:
            return None
        target_name = self.get_server_choice("Enter the number of the target server: ", exclude=source_name)
        if not target_name:
            return None
        return source_name, target_name

    def add_server(self) -> None:
        """Add a new media server with user input."""
        name = input("Enter a name for the server: ").strip()
        url = input(f"Enter the URL for {name}: ").strip()
        api_key = input(f"Enter the API key for {name}: ").strip()
        server_type = input("Enter server type (emby/jellyfin): ").strip().lower()

        admin_username = None
        admin_password = None
        if input("Configure administrator credentials? (y/n): ").lower() == 'y':
            admin_username = input("Enter administrator username: ").strip()
            admin_password = input("Enter administrator password: ")

        if self.manager.add_server(name, url, api_key, server_type, admin_username, admin_password):
            self.manager.save_servers()
            print(f"Server {name} added successfully.")
        else:
            print(f"Failed to add server {name}.")

    def remove_server(self) -> None:
        """Remove a media server."""
        name = self.get_server_choice("Enter the number of the server to remove: ")
        if name and self.manager.remove_server(name):
            self.manager.save_servers()
            print(f"Removed server: {name}")

    def view_servers(self) -> None:
        """Display the configured servers."""
        if not self.manager.servers:
            print("No servers configured.")
            return

        for name, config in self.manager.servers.items():
            print(f"\nServer: {name}")
            print(f"Type: {config['type']}")
            print(f"URL: {config['url']}")
            print(f"Administrator: {config.get('admin_username') or 'not configured'}")
            if config.get('timeout'):
                print(f"Timeout: {config['timeout']}s")

    def _get_options(self) -> MigrationOptions:
        """Get migration options from user input."""
        options = MigrationOptions()
        options.interactive = ask_confirmation("Confirm each change?", False)
        options.dry_run = ask_confirmation("Dry run (report changes without writing)?", False)
        deadline = input("Overall time limit in seconds (leave empty for none): ").strip()
        if deadline:
            try:
                options.deadline_seconds = float(deadline)
            except ValueError:
                print("Invalid time limit, running without one.")
        return options

    def diff_users(self) -> None:
        """Print the difference between the users of two servers."""
        pair = self.get_server_pair()
        if not pair:
            return
        source_name, target_name = pair
        full = ask_confirmation("Include configuration and policy?", False)

        try:
            driver = self.manager.create_driver(source_name, target_name)
            diff = driver.diff_users(full)
        except MigrationError as e:
            logger.error(f"Error comparing users: {e}")
            print("User diff failed.")
            return

        print(diff if diff else "Users are identical.")

    def migrate_users(self) -> None:
        """Create missing users on the target and delete users absent from the source."""
        pair = self.get_server_pair()
        if not pair:
            return
        source_name, target_name = pair

        options = self._get_options()
        options.delete_missing_users = ask_confirmation(
            f"Delete users missing from {source_name} on {target_name}?", True)
        options.copy_policy = ask_confirmation("Copy user policies?", False)
        passwords = self._get_passwords()

        try:
            driver = self.manager.create_driver(source_name, target_name, options)
            report = driver.migrate_users(passwords)
        except MigrationError as e:
            self._log_users_failure(source_name, target_name, e)
            print("User migration failed.")
            return

        log_user_migration(source_name, target_name, True, len(report.created), len(report.deleted),
                           options.dry_run)
        print(f"User migration completed: {report.summary()}")

    def _get_passwords(self) -> Dict[str, str]:
        """Get initial passwords for created users from user input."""
        passwords: Dict[str, str] = {}
        if input("Set passwords for created users? (y/n): ").lower() != 'y':
            return passwords

        print("Enter one 'username=password' per line, empty line to finish.")
        while True:
            line = input("> ").strip()
            if not line:
                break
            username, sep, password = line.partition("=")
            if not sep or not username.strip():
                print("Invalid entry, expected username=password.")
                continue
            passwords[username.strip()] = password
        return passwords

    @staticmethod
    def _log_users_failure(source_name: str, target_name: str, error: MigrationError) -> None:
        report: Optional[MigrationReport] = error.report
        log_user_migration(
            source_name, target_name, False,
            len(report.created) if report else 0,
            len(report.deleted) if report else 0,
            error=str(error),
        )

    def migrate_watch_history(self) -> None:
        """Migrate one user's watch history between two servers."""
        pair = self.get_server_pair()
        if not pair:
            return
        source_name, target_name = pair

        username = input("Enter the username to migrate: ").strip()
        if not username:
            print("Username is required.")
            return
        options = self._get_options()

        try:
            driver = self.manager.create_driver(source_name, target_name, options)
            report = driver.migrate_user_watch_history(username)
        except MigrationError as e:
            report = e.report or MigrationReport(operation="migrate_user_watch_history", username=username)
            log_migration_operation(
                source_name, target_name, username, False,
                report.updated, report.unchanged, report.unmatched, report.declined,
                options.dry_run, str(e),
            )
            print("Watch history migration failed.")
            return

        log_migration_operation(
            source_name, target_name, username, True,
            report.updated, report.unchanged, report.unmatched, report.declined,
            options.dry_run,
        )
        print(f"Watch history migration completed: {report.summary()}")

    def run(self) -> None:
        """Run the CLI interface main loop."""
        while True:
            self.display_menu()
            choice = input("Enter your choice (1-7): ")

            if choice == '1':
                self.add_server()
            elif choice == '2':
                self.remove_server()
            elif choice == '3':
                self.view_servers()
            elif choice == '4':
                self.diff_users()
            elif choice == '5':
                self.migrate_users()
            elif choice == '6':
                self.migrate_watch_history()
            elif choice == '7':
                break
            else:
                print("Invalid choice. Please enter a number between 1 and 7.")


def main():
    """
    Entry point for the Mbmigrate CLI application.

    Initializes the command-line interface and starts the interactive menu
    for managing media servers and running migrations.
    """
    cli = CliInterface()
    cli.run()
