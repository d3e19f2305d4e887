from newspulse.main import run

run()
